from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from agentforge.domain.models import AuditEvent
from agentforge.persistence.guards import ActorScope


# Metadata keys whose values never reach the audit table: source text, raw vectors, credentials.
_REDACTED_FRAGMENTS = ("snippet", "vector", "content", "token", "secret", "password")


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): "[REDACTED]"
            if any(fragment in str(key).lower() for fragment in _REDACTED_FRAGMENTS)
            else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def stage_event(
    session: AsyncSession,
    *,
    actor_id: str | None,
    event_type: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    project_id: str | None = None,
    outcome: str = "success",
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditEvent:
    # Add the event to the caller's transaction; it commits or rolls back with the change it describes.
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        project_id=project_id,
        request_id=request_id,
        metadata_json=redact(metadata) if metadata else None,
    )
    session.add(event)
    return event


def stage_scope_event(
    scope: ActorScope,
    event_type: str,
    *,
    resource_type: str,
    resource_id: str,
    project_id: str | None,
    metadata: dict[str, Any] | None = None,
) -> AuditEvent:
    return stage_event(
        scope.session,
        actor_id=scope.user_id,
        event_type=event_type,
        resource_type=resource_type,
        resource_id=resource_id,
        project_id=project_id,
        metadata=metadata,
    )


async def list_events(
    scope: ActorScope,
    *,
    event_type: str | None = None,
    outcome: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    project_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    # Actors see their own events; administrators see everything.
    stmt = scope.select(AuditEvent)
    if event_type:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    if outcome:
        stmt = stmt.where(AuditEvent.outcome == outcome)
    if resource_type:
        stmt = stmt.where(AuditEvent.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditEvent.resource_id == resource_id)
    if project_id:
        stmt = stmt.where(AuditEvent.project_id == project_id)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    return await scope.scalars(stmt)
