from __future__ import annotations

from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from agentforge.apps.api.deps import get_actor, get_db
from agentforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from agentforge.apps.api.response import SuccessEnvelope
from agentforge.persistence.guards import Actor
from agentforge.services.reporting import get_performance_trend, get_quality_overview, get_similarity_clusters


router = APIRouter(prefix="/rollups", tags=["rollups"], responses=DEFAULT_ERROR_RESPONSES)


class ProjectQualityResponse(BaseModel):
    project_id: str
    project_name: str
    project_status: str
    total_files: int
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
    last_analyzed_at: datetime | None


class SimilarityClusterResponse(BaseModel):
    project1_id: str
    project2_id: str
    model_id: str
    project1_name: str
    project2_name: str
    avg_distance: float
    comparison_count: int


class WeeklyPerformanceResponse(BaseModel):
    week_start: date
    metric_name: str
    avg_value: float
    min_value: float
    max_value: float
    sample_count: int
    std_dev: float


# Rollup reads reflect the last published refresh, not the live tables.
@router.get("/quality", response_model=SuccessEnvelope[list[ProjectQualityResponse]] | list[ProjectQualityResponse])
async def quality_overview(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[ProjectQualityResponse]:
    return [ProjectQualityResponse(**row) for row in await get_quality_overview(db, actor=actor)]


@router.get(
    "/similarity",
    response_model=SuccessEnvelope[list[SimilarityClusterResponse]] | list[SimilarityClusterResponse],
)
async def similarity_clusters(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[SimilarityClusterResponse]:
    return [SimilarityClusterResponse(**row) for row in await get_similarity_clusters(db, actor=actor)]


@router.get(
    "/performance",
    response_model=SuccessEnvelope[list[WeeklyPerformanceResponse]] | list[WeeklyPerformanceResponse],
)
async def performance_trend(
    metric_name: str | None = Query(default=None, max_length=100),
    weeks_back: int = Query(default=12, ge=1, le=520),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[WeeklyPerformanceResponse]:
    rows = await get_performance_trend(db, actor=actor, metric_name=metric_name, weeks_back=weeks_back)
    return [WeeklyPerformanceResponse(**row) for row in rows]
