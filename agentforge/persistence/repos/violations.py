from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from agentforge.core.errors import ConstraintViolationError, NotFoundError
from agentforge.domain.enums import (
    SEVERITIES,
    VIOLATION_RESOLUTION_STATUSES,
    VIOLATION_STATUSES,
    VIOLATION_TRANSITIONS,
    require_member,
)
from agentforge.domain.models import FileAnalysis, Violation
from agentforge.persistence.guards import ActorScope
from agentforge.persistence.integrity import classify_integrity_error
from agentforge.persistence.repos.audit import stage_scope_event
from agentforge.persistence.repos.analyses import require_open_analysis


async def create_violation(
    scope: ActorScope,
    *,
    project_id: str,
    rule_id: str,
    rule_name: str,
    severity: str,
    message: str,
    analysis_id: str | None = None,
    file_analysis_id: str | None = None,
    file_path: str | None = None,
    line_number: int | None = None,
    column_number: int | None = None,
    suggestion: str | None = None,
) -> Violation:
    require_member(severity, SEVERITIES, field="severity")
    await scope.require_project(project_id, write=True)
    if analysis_id is not None:
        await require_open_analysis(scope, analysis_id, project_id=project_id)
    if file_analysis_id is not None:
        file_analysis = await scope.get(FileAnalysis, file_analysis_id)
        if file_analysis is None or file_analysis.project_id != project_id:
            raise NotFoundError("file_analysis", file_analysis_id)
        if analysis_id is not None and file_analysis.analysis_id != analysis_id:
            raise ConstraintViolationError(
                "file analysis belongs to a different analysis",
                field="file_analysis_id",
            )
        file_path = file_path or file_analysis.file_path
    for field, value in (("line_number", line_number), ("column_number", column_number)):
        if value is not None and value < 0:
            raise ConstraintViolationError(f"{field} must not be negative", field=field)

    violation = Violation(
        project_id=project_id,
        analysis_id=analysis_id,
        file_analysis_id=file_analysis_id,
        rule_id=rule_id,
        rule_name=rule_name,
        severity=severity,
        status="open",
        file_path=file_path,
        line_number=line_number,
        column_number=column_number,
        message=message,
        suggestion=suggestion,
    )
    scope.session.add(violation)
    try:
        await scope.session.flush()
    except IntegrityError as exc:
        raise classify_integrity_error(exc, resource_type="violation") from exc
    return violation


async def get_violation(scope: ActorScope, violation_id: str) -> Violation:
    return await scope.require(Violation, violation_id)


async def list_violations(
    scope: ActorScope,
    *,
    project_id: str,
    severity: str | None = None,
    status: str | None = None,
    analysis_id: str | None = None,
) -> list[Violation]:
    stmt = scope.select(Violation).where(Violation.project_id == project_id)
    if severity is not None:
        require_member(severity, SEVERITIES, field="severity")
        stmt = stmt.where(Violation.severity == severity)
    if status is not None:
        require_member(status, VIOLATION_STATUSES, field="status")
        stmt = stmt.where(Violation.status == status)
    if analysis_id is not None:
        stmt = stmt.where(Violation.analysis_id == analysis_id)
    return await scope.scalars(stmt.order_by(Violation.created_at, Violation.id))


async def update_violation_status(
    scope: ActorScope,
    violation_id: str,
    *,
    status: str,
    note: str | None = None,
) -> Violation:
    """Move a violation through its lifecycle.

    Closing statuses stamp ``resolved_at``/``resolved_by`` (and the optional
    note); reopening clears all three.
    """
    require_member(status, VIOLATION_STATUSES, field="status")
    violation = await scope.require(Violation, violation_id, write=True)
    if status not in VIOLATION_TRANSITIONS.get(violation.status, ()):
        raise ConstraintViolationError(
            f"violation {violation_id} cannot move from {violation.status} to {status}",
            kind="transition",
            field="status",
        )
    if status in VIOLATION_RESOLUTION_STATUSES:
        violation.resolved_at = datetime.now(timezone.utc)
        violation.resolved_by = scope.user_id
        violation.resolution_note = note
    else:
        if note is not None:
            raise ConstraintViolationError("a note is only recorded when closing a violation", field="note")
        violation.resolved_at = None
        violation.resolved_by = None
        violation.resolution_note = None
    previous = violation.status
    violation.status = status
    await scope.session.flush()
    stage_scope_event(
        scope,
        "violation.status_changed",
        resource_type="violation",
        resource_id=violation_id,
        project_id=violation.project_id,
        metadata={"from": previous, "to": status},
    )
    return violation
