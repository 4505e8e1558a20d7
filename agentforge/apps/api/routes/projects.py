from __future__ import annotations

from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from agentforge.apps.api.deps import get_actor, get_db
from agentforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from agentforge.apps.api.response import SuccessEnvelope
from agentforge.persistence.guards import Actor
from agentforge.services.reporting import get_compliance_trend, get_project_statistics


router = APIRouter(prefix="/projects", tags=["projects"], responses=DEFAULT_ERROR_RESPONSES)


class ProjectStatisticsResponse(BaseModel):
    project_id: str
    project_name: str
    status: str
    total_analyses: int
    completed_analyses: int
    total_files: int
    total_lines: int
    avg_quality_score: float | None
    avg_complexity_score: float | None
    avg_security_score: float | None
    total_violations: int
    critical_violations: int
    high_violations: int
    medium_violations: int
    low_violations: int
    info_violations: int
    open_violations: int
    latest_analysis_id: str | None
    compliance_score: float | None
    quality_score: float | None
    security_score: float | None
    performance_score: float | None
    last_analyzed_at: datetime | None


class CompliancePointResponse(BaseModel):
    day: date
    avg_score: float
    total_checks: int
    compliant_checks: int
    non_compliant_checks: int


@router.get(
    "/{project_id}/statistics",
    response_model=SuccessEnvelope[ProjectStatisticsResponse] | ProjectStatisticsResponse,
)
async def project_statistics(
    project_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> ProjectStatisticsResponse:
    # Live numbers from the raw tables; 404 for absent and invisible projects alike.
    stats = await get_project_statistics(db, project_id=project_id, actor=actor)
    return ProjectStatisticsResponse(**stats.to_dict())


@router.get(
    "/{project_id}/compliance-trend",
    response_model=SuccessEnvelope[list[CompliancePointResponse]] | list[CompliancePointResponse],
)
async def compliance_trend(
    project_id: str,
    days_back: int = Query(default=30, ge=1, le=365),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[CompliancePointResponse]:
    points = await get_compliance_trend(db, project_id=project_id, actor=actor, days_back=days_back)
    return [CompliancePointResponse(**point.to_dict()) for point in points]
