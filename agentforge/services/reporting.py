from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from agentforge.core.errors import ConstraintViolationError
from agentforge.domain.enums import SEVERITIES
from agentforge.domain.models import (
    Analysis,
    CodeSimilarityRollup,
    DailyComplianceRollup,
    FileAnalysis,
    ProjectQualityRollup,
    Violation,
    WeeklyPerformanceRollup,
)
from agentforge.persistence.guards import Actor, ActorScope
from agentforge.services.rollups import active_rows, row_to_dict


@dataclass(frozen=True)
class ProjectStatistics:
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

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CompliancePoint:
    day: date
    avg_score: float
    total_checks: int
    compliant_checks: int
    non_compliant_checks: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _round(value: Any) -> float | None:
    return None if value is None else round(float(value), 4)


def _check_window(value: int, *, field: str, maximum: int) -> int:
    if int(value) < 1 or int(value) > maximum:
        raise ConstraintViolationError(f"{field} must be between 1 and {maximum}", field=field)
    return int(value)


async def get_project_statistics(session: AsyncSession, *, project_id: str, actor: Actor) -> ProjectStatistics:
    """Live statistics for one project, read from the raw tables.

    Violation counts cover every stored violation of the project; the score
    fields come from the most recent completed analysis, whose file analyses
    also supply the file metrics. Absent and invisible projects both raise
    ``NotFoundError``.
    """
    scope = ActorScope(session, actor)
    project = await scope.require_project(project_id)

    severity_rows = await scope.execute(
        scope.select(Violation, Violation.severity, func.count(Violation.id))
        .where(Violation.project_id == project_id)
        .group_by(Violation.severity)
    )
    counts = {severity: 0 for severity in SEVERITIES}
    for severity, count in severity_rows.all():
        counts[severity] = int(count)
    open_violations = await scope.scalar(
        scope.select(Violation, func.count(Violation.id)).where(
            Violation.project_id == project_id,
            or_(Violation.status == "open", Violation.status == "in_progress"),
        )
    )

    analysis_counts = await scope.execute(
        scope.select(Analysis, Analysis.status, func.count(Analysis.id))
        .where(Analysis.project_id == project_id)
        .group_by(Analysis.status)
    )
    by_status = {status: int(count) for status, count in analysis_counts.all()}

    latest_rows = await scope.scalars(
        scope.select(Analysis)
        .where(Analysis.project_id == project_id, Analysis.status == "completed")
        .order_by(Analysis.completed_at.desc(), Analysis.id.desc())
        .limit(1)
    )
    latest = latest_rows[0] if latest_rows else None

    total_files = 0
    avg_quality = avg_complexity = avg_security = None
    if latest is not None:
        file_stats = await scope.execute(
            scope.select(
                FileAnalysis,
                func.count(FileAnalysis.id),
                func.avg(FileAnalysis.quality_score),
                func.avg(FileAnalysis.complexity_score),
                func.avg(FileAnalysis.security_score),
            ).where(FileAnalysis.analysis_id == latest.id)
        )
        total_files, avg_quality, avg_complexity, avg_security = file_stats.one()

    return ProjectStatistics(
        project_id=project.id,
        project_name=project.name,
        status=project.status,
        total_analyses=sum(by_status.values()),
        completed_analyses=by_status.get("completed", 0),
        total_files=int(total_files or 0),
        total_lines=int(project.total_lines or 0),
        avg_quality_score=_round(avg_quality),
        avg_complexity_score=_round(avg_complexity),
        avg_security_score=_round(avg_security),
        total_violations=sum(counts.values()),
        critical_violations=counts["critical"],
        high_violations=counts["high"],
        medium_violations=counts["medium"],
        low_violations=counts["low"],
        info_violations=counts["info"],
        open_violations=int(open_violations or 0),
        latest_analysis_id=latest.id if latest else None,
        compliance_score=_round(latest.compliance_score) if latest else None,
        quality_score=_round(latest.quality_score) if latest else None,
        security_score=_round(latest.security_score) if latest else None,
        performance_score=_round(latest.performance_score) if latest else None,
        last_analyzed_at=project.last_analyzed_at,
    )


async def get_compliance_trend(
    session: AsyncSession,
    *,
    project_id: str,
    actor: Actor,
    days_back: int = 30,
) -> list[CompliancePoint]:
    # Served from the daily compliance rollup; reflects data as of the last refresh.
    days = _check_window(days_back, field="days_back", maximum=365)
    scope = ActorScope(session, actor)
    await scope.require_project(project_id)
    since = datetime.now(timezone.utc).date() - timedelta(days=days)
    stmt = scope.tag(
        active_rows("daily_compliance").where(
            DailyComplianceRollup.project_id == project_id,
            DailyComplianceRollup.project_id.in_(scope.visible_project_ids()),
            DailyComplianceRollup.day >= since,
        )
    )
    result = await scope.execute(stmt)
    return [
        CompliancePoint(
            day=row.day,
            avg_score=row.avg_score,
            total_checks=row.total_checks,
            compliant_checks=row.compliant_checks,
            non_compliant_checks=row.non_compliant_checks,
        )
        for row in result.scalars().all()
    ]


async def get_quality_overview(session: AsyncSession, *, actor: Actor) -> list[dict[str, Any]]:
    scope = ActorScope(session, actor)
    stmt = scope.tag(
        active_rows("project_quality").where(ProjectQualityRollup.project_id.in_(scope.visible_project_ids()))
    )
    result = await scope.execute(stmt)
    return [row_to_dict(row) for row in result.scalars().all()]


async def get_similarity_clusters(session: AsyncSession, *, actor: Actor) -> list[dict[str, Any]]:
    # Both sides of a pair must be visible; otherwise the pair would leak the other project's name.
    scope = ActorScope(session, actor)
    visible = scope.visible_project_ids()
    stmt = scope.tag(
        active_rows("code_similarity").where(
            CodeSimilarityRollup.project1_id.in_(visible),
            CodeSimilarityRollup.project2_id.in_(visible),
        )
    )
    result = await scope.execute(stmt)
    return [row_to_dict(row) for row in result.scalars().all()]


async def get_performance_trend(
    session: AsyncSession,
    *,
    actor: Actor,
    metric_name: str | None = None,
    weeks_back: int = 12,
) -> list[dict[str, Any]]:
    # Performance metrics are system-wide; any active actor may read the weekly rollup.
    weeks = _check_window(weeks_back, field="weeks_back", maximum=520)
    scope = ActorScope(session, actor)
    if not await scope.is_active():
        return []
    today = datetime.now(timezone.utc).date()
    since = today - timedelta(days=today.weekday()) - timedelta(weeks=weeks)
    stmt = active_rows("weekly_performance").where(WeeklyPerformanceRollup.week_start >= since)
    if metric_name is not None:
        stmt = stmt.where(WeeklyPerformanceRollup.metric_name == metric_name)
    result = await session.execute(stmt)
    return [row_to_dict(row) for row in result.scalars().all()]
