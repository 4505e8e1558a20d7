from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from agentforge.apps.api.response import error_response, is_versioned_request
from agentforge.core.errors import (
    ConstraintViolationError,
    DimensionMismatchError,
    MaintenanceInProgressError,
    NotFoundError,
    VectorIndexError,
)
from agentforge.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    fallback = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        code = str(detail.get("code") or fallback)
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return fallback, detail, None
    return fallback, "Request failed", None


def _envelope(request: Request, status_code: int, code: str, message: str, details: dict[str, Any] | None = None):
    return JSONResponse(
        content=error_response(request=request, code=code, message=message, details=details),
        status_code=status_code,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface request validation errors with structured details for client parsing.
    return _envelope(
        request,
        422,
        "REQUEST_VALIDATION_ERROR",
        "Validation error",
        {"errors": [{k: v for k, v in error.items() if k != "ctx"} for error in exc.errors()]},
    )


async def not_found_exception_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    # Denied and absent resources produce byte-identical bodies apart from the request id.
    return _envelope(request, 404, "NOT_FOUND", str(exc))


async def constraint_violation_exception_handler(request: Request, exc: ConstraintViolationError) -> JSONResponse:
    if isinstance(exc, DimensionMismatchError):
        return _envelope(
            request,
            422,
            "DIMENSION_MISMATCH",
            str(exc),
            {"model_id": exc.model_id, "expected": exc.expected, "actual": exc.actual},
        )
    details = {"kind": exc.kind}
    if exc.field:
        details["field"] = exc.field
    return _envelope(request, 422, "CONSTRAINT_VIOLATION", str(exc), details)


async def maintenance_in_progress_exception_handler(
    request: Request, exc: MaintenanceInProgressError
) -> JSONResponse:
    return _envelope(request, 409, "MAINTENANCE_IN_PROGRESS", str(exc))


async def vector_index_exception_handler(request: Request, exc: VectorIndexError) -> JSONResponse:
    logger.warning("vector_index_unavailable error=%s", exc)
    return _envelope(request, 503, "VECTOR_INDEX_UNAVAILABLE", "Vector index unavailable")


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # A missing actor predicate is a server bug; never answer with partial data.
    logger.error("tenant_predicate_missing path=%s message=%s", request.url.path, exc.message)
    return _envelope(request, 500, "TENANT_PREDICATE_REQUIRED", "Actor scope required")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_api_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    return _envelope(request, 500, "INTERNAL_ERROR", "Internal server error")


def install_exception_handlers(app) -> None:  # noqa: ANN001
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(NotFoundError, not_found_exception_handler)
    app.add_exception_handler(ConstraintViolationError, constraint_violation_exception_handler)
    app.add_exception_handler(MaintenanceInProgressError, maintenance_in_progress_exception_handler)
    app.add_exception_handler(VectorIndexError, vector_index_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
