from __future__ import annotations

from typing import Any

from agentforge.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _response(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing X-Actor-Id header"),
    # Absent and forbidden resources share one response so existence never leaks.
    404: _response("Not found", code="NOT_FOUND", message="project 8f1c not found"),
    409: _response("Conflict", code="MAINTENANCE_IN_PROGRESS", message="maintenance cycle already running"),
    422: _response("Constraint violation", code="CONSTRAINT_VIOLATION", message="invalid severity 'urgent'"),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}
