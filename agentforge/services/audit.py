from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from agentforge.persistence.db import SessionLocal
from agentforge.persistence.repos.audit import stage_event


logger = logging.getLogger(__name__)


async def record_event(
    *,
    actor_id: str | None,
    event_type: str,
    outcome: str = "success",
    resource_type: str | None = None,
    resource_id: str | None = None,
    project_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    best_effort: bool = True,
) -> None:
    """Write one audit event outside any caller transaction.

    Used for actions with no row change to ride along with (manual maintenance
    triggers). Repo mutations stage their events in their own transaction
    instead. A failed write is logged and swallowed unless ``best_effort`` is
    off.
    """
    async with SessionLocal() as session:
        stage_event(
            session,
            actor_id=actor_id,
            event_type=event_type,
            outcome=outcome,
            resource_type=resource_type,
            resource_id=resource_id,
            project_id=project_id,
            request_id=request_id,
            metadata=metadata,
        )
        try:
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            if not best_effort:
                raise
            logger.warning("audit_event_write_failed event_type=%s request_id=%s", event_type, request_id, exc_info=exc)
