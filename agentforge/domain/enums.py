from __future__ import annotations

from typing import Literal

from agentforge.core.errors import ConstraintViolationError


UserRole = Literal["admin", "contributor", "viewer"]
USER_ROLES: tuple[str, ...] = ("admin", "contributor", "viewer")
ROLE_ADMIN = "admin"
ROLE_VIEWER = "viewer"

ProjectStatus = Literal["active", "archived", "suspended"]
PROJECT_STATUSES: tuple[str, ...] = ("active", "archived", "suspended")

AnalysisStatus = Literal["pending", "in_progress", "completed", "failed", "cancelled"]
ANALYSIS_STATUSES: tuple[str, ...] = ("pending", "in_progress", "completed", "failed", "cancelled")
ANALYSIS_TERMINAL_STATUSES: tuple[str, ...] = ("completed", "failed", "cancelled")
ANALYSIS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "pending": ("in_progress", "cancelled"),
    "in_progress": ("completed", "failed", "cancelled"),
    "completed": (),
    "failed": (),
    "cancelled": (),
}

Severity = Literal["critical", "high", "medium", "low", "info"]
SEVERITIES: tuple[str, ...] = ("critical", "high", "medium", "low", "info")

ViolationStatus = Literal["open", "in_progress", "resolved", "false_positive", "suppressed", "wont_fix"]
VIOLATION_STATUSES: tuple[str, ...] = (
    "open",
    "in_progress",
    "resolved",
    "false_positive",
    "suppressed",
    "wont_fix",
)
# Statuses that close a violation and therefore carry resolution fields.
VIOLATION_RESOLUTION_STATUSES: tuple[str, ...] = ("resolved", "false_positive", "suppressed", "wont_fix")
VIOLATION_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "open": ("in_progress",) + VIOLATION_RESOLUTION_STATUSES,
    "in_progress": ("open",) + VIOLATION_RESOLUTION_STATUSES,
    "resolved": ("open",),
    "false_positive": ("open",),
    "suppressed": ("open",),
    "wont_fix": ("open",),
}

ResourceType = Literal["project", "analysis", "file_analysis", "violation", "embedding"]
RESOURCE_TYPES: tuple[str, ...] = ("project", "analysis", "file_analysis", "violation", "embedding")

GrantPermission = Literal["read", "write"]
GRANT_PERMISSIONS: tuple[str, ...] = ("read", "write")

UnitType = Literal["file", "function", "pattern"]
UNIT_TYPES: tuple[str, ...] = ("file", "function", "pattern")

DistanceMetric = Literal["cosine"]
DISTANCE_METRICS: tuple[str, ...] = ("cosine",)

IndexStatus = Literal["pending", "indexed", "failed"]
INDEX_STATUSES: tuple[str, ...] = ("pending", "indexed", "failed")

MaintenanceStatus = Literal["idle", "running", "succeeded", "partially_failed", "failed", "already_running"]
MAINTENANCE_RUN_STATUSES: tuple[str, ...] = ("running", "succeeded", "partially_failed", "failed")


def require_member(value: str, allowed: tuple[str, ...], *, field: str) -> str:
    # Reject values outside a closed enumeration instead of coercing them.
    if value not in allowed:
        raise ConstraintViolationError(
            f"invalid {field} {value!r}; expected one of {', '.join(allowed)}",
            kind="enum",
            field=field,
        )
    return value


def check_in(column: str, allowed: tuple[str, ...]) -> str:
    # Render CHECK constraint SQL for a closed enumeration column.
    values = ", ".join(f"'{value}'" for value in allowed)
    return f"{column} IN ({values})"
