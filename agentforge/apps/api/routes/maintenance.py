from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from agentforge.apps.api.deps import get_actor, get_db
from agentforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from agentforge.apps.api.response import SuccessEnvelope
from agentforge.core.errors import AccessDeniedError, MaintenanceInProgressError
from agentforge.persistence.guards import Actor, ActorScope
from agentforge.services.audit import record_event
from agentforge.services.maintenance import MaintenanceReport, run_maintenance_cycle


router = APIRouter(prefix="/maintenance", tags=["maintenance"], responses=DEFAULT_ERROR_RESPONSES)


class MaintenanceStepResponse(BaseModel):
    name: str
    status: str
    duration_ms: int
    detail: dict[str, Any]
    error: str | None


class MaintenanceReportResponse(BaseModel):
    status: str
    trigger: str
    run_id: str | None
    started_at: datetime
    finished_at: datetime | None
    steps: list[MaintenanceStepResponse]


def _to_response(report: MaintenanceReport) -> MaintenanceReportResponse:
    return MaintenanceReportResponse(
        status=report.status,
        trigger=report.trigger,
        run_id=report.run_id,
        started_at=report.started_at,
        finished_at=report.finished_at,
        steps=[
            MaintenanceStepResponse(
                name=step.name,
                status=step.status,
                duration_ms=step.duration_ms,
                detail=step.detail,
                error=step.error,
            )
            for step in report.steps
        ],
    )


@router.post("/run", response_model=SuccessEnvelope[MaintenanceReportResponse] | MaintenanceReportResponse)
async def trigger_maintenance(
    strict: bool = Query(default=False),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> MaintenanceReportResponse:
    # Administrators only; the cycle runs inline and a concurrent trigger reports already_running.
    if not await ActorScope(db, actor).is_admin():
        raise AccessDeniedError("maintenance")
    # Release the request transaction before the cycle opens its own sessions.
    await db.rollback()
    report = await run_maintenance_cycle(trigger="manual")
    if strict and report.status == "already_running":
        raise MaintenanceInProgressError("maintenance cycle already running")
    await record_event(
        actor_id=actor.user_id,
        event_type="maintenance.triggered",
        outcome="success" if report.status in ("succeeded", "already_running") else "failure",
        resource_type="maintenance_run",
        resource_id=report.run_id,
        request_id=actor.request_id,
        metadata={"status": report.status, "failed_steps": [step.name for step in report.failed_steps]},
    )
    return _to_response(report)
