from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import logging
import statistics
import time
from typing import Any, Awaitable, Callable

import numpy as np
from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from agentforge.core.config import get_settings
from agentforge.core.errors import ConstraintViolationError
from agentforge.domain.models import (
    Analysis,
    Base,
    CodeSimilarityRollup,
    DailyComplianceRollup,
    Embedding,
    FileAnalysis,
    PerformanceMetric,
    Project,
    ProjectQualityRollup,
    RollupVersion,
    Violation,
    WeeklyPerformanceRollup,
)
from agentforge.persistence.guards import as_system


logger = logging.getLogger(__name__)

RollupRow = dict[str, Any]


@dataclass(frozen=True)
class RollupDefinition:
    name: str
    model: type[Base]
    # Pure function of the raw tables; the same data always yields the same rows.
    compute: Callable[[AsyncSession], Awaitable[list[RollupRow]]]
    order_by: tuple[str, ...]


@dataclass(frozen=True)
class RollupRefreshResult:
    name: str
    version: int
    row_count: int
    duration_ms: int


def _round(value: float | None, digits: int = 6) -> float | None:
    if value is None:
        return None
    return round(float(value), digits)


def _as_day(value: datetime) -> date:
    return value.astimezone(timezone.utc).date()


async def latest_completed_analyses(session: AsyncSession) -> dict[str, Analysis]:
    # Most recent completed analysis per project (completed_at, then id as tie-breaker).
    stmt = as_system(
        select(Analysis)
        .where(Analysis.status == "completed", Analysis.completed_at.is_not(None))
        .order_by(Analysis.project_id, Analysis.completed_at.desc(), Analysis.id.desc())
    )
    result = await session.execute(stmt)
    latest: dict[str, Analysis] = {}
    for analysis in result.scalars().all():
        latest.setdefault(analysis.project_id, analysis)
    return latest


async def compute_daily_compliance(session: AsyncSession) -> list[RollupRow]:
    threshold = get_settings().compliance_pass_threshold
    stmt = as_system(
        select(Analysis.project_id, Project.name, Analysis.completed_at, Analysis.compliance_score)
        .join(Project, Project.id == Analysis.project_id)
        .where(
            Analysis.status == "completed",
            Analysis.completed_at.is_not(None),
            Analysis.compliance_score.is_not(None),
        )
        .order_by(Analysis.completed_at, Analysis.id)
    )
    result = await session.execute(stmt)
    buckets: dict[tuple[date, str], list[float]] = defaultdict(list)
    names: dict[str, str] = {}
    for project_id, project_name, completed_at, score in result.all():
        buckets[(_as_day(completed_at), project_id)].append(float(score))
        names[project_id] = project_name

    rows: list[RollupRow] = []
    for (day, project_id), scores in sorted(buckets.items()):
        compliant = sum(1 for score in scores if score >= threshold)
        rows.append(
            {
                "day": day,
                "project_id": project_id,
                "project_name": names[project_id],
                "avg_score": _round(sum(scores) / len(scores), 4),
                "total_checks": len(scores),
                "compliant_checks": compliant,
                "non_compliant_checks": len(scores) - compliant,
            }
        )
    return rows


async def compute_weekly_performance(session: AsyncSession) -> list[RollupRow]:
    stmt = as_system(
        select(PerformanceMetric.metric_name, PerformanceMetric.metric_value, PerformanceMetric.recorded_at).order_by(
            PerformanceMetric.recorded_at, PerformanceMetric.id
        )
    )
    result = await session.execute(stmt)
    buckets: dict[tuple[date, str], list[float]] = defaultdict(list)
    for metric_name, metric_value, recorded_at in result.all():
        day = _as_day(recorded_at)
        # ISO weeks start on Monday.
        week_start = day - timedelta(days=day.weekday())
        buckets[(week_start, metric_name)].append(float(metric_value))

    rows: list[RollupRow] = []
    for (week_start, metric_name), values in sorted(buckets.items()):
        rows.append(
            {
                "week_start": week_start,
                "metric_name": metric_name,
                "avg_value": _round(statistics.fmean(values)),
                "min_value": min(values),
                "max_value": max(values),
                "sample_count": len(values),
                "std_dev": _round(statistics.pstdev(values)),
            }
        )
    return rows


def _mean(values: list[float]) -> float | None:
    return _round(sum(values) / len(values), 4) if values else None


async def compute_project_quality(session: AsyncSession) -> list[RollupRow]:
    """One row per active project.

    File metrics come from the project's latest completed analysis; violation
    counts cover every stored violation of the project.
    """
    projects_result = await session.execute(
        as_system(select(Project).where(Project.status == "active").order_by(Project.id))
    )
    projects = list(projects_result.scalars().all())
    if not projects:
        return []
    latest = await latest_completed_analyses(session)

    files_by_analysis: dict[str, list[FileAnalysis]] = defaultdict(list)
    latest_ids = [analysis.id for analysis in latest.values()]
    if latest_ids:
        files_result = await session.execute(
            as_system(
                select(FileAnalysis)
                .where(FileAnalysis.analysis_id.in_(latest_ids))
                .order_by(FileAnalysis.id)
            )
        )
        for file_analysis in files_result.scalars().all():
            files_by_analysis[file_analysis.analysis_id].append(file_analysis)

    violation_result = await session.execute(
        as_system(
            select(Violation.project_id, Violation.severity, Violation.status, func.count(Violation.id)).group_by(
                Violation.project_id, Violation.severity, Violation.status
            )
        )
    )
    severity_counts: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
    open_counts: dict[str, int] = defaultdict(int)
    for project_id, severity, status, count in violation_result.all():
        severity_counts[project_id][severity] += int(count)
        if status in ("open", "in_progress"):
            open_counts[project_id] += int(count)

    rows: list[RollupRow] = []
    for project in projects:
        analysis = latest.get(project.id)
        files = files_by_analysis.get(analysis.id, []) if analysis else []
        counts = severity_counts.get(project.id, {})
        rows.append(
            {
                "project_id": project.id,
                "project_name": project.name,
                "project_status": project.status,
                "total_files": len(files),
                "avg_quality_score": _mean([f.quality_score for f in files if f.quality_score is not None]),
                "avg_complexity_score": _mean([f.complexity_score for f in files if f.complexity_score is not None]),
                "avg_security_score": _mean([f.security_score for f in files if f.security_score is not None]),
                "total_violations": sum(counts.values()),
                "critical_violations": counts.get("critical", 0),
                "high_violations": counts.get("high", 0),
                "medium_violations": counts.get("medium", 0),
                "low_violations": counts.get("low", 0),
                "info_violations": counts.get("info", 0),
                "open_violations": open_counts.get(project.id, 0),
                "last_analyzed_at": project.last_analyzed_at,
            }
        )
    return rows


async def compute_code_similarity(session: AsyncSession) -> list[RollupRow]:
    """Project pairs whose embeddings under one model are close on average.

    For each model, every (project1 < project2) pair is scored by the mean cosine
    distance over all cross-project embedding pairs; pairs under the cluster
    threshold are kept.
    """
    threshold = get_settings().similarity_cluster_threshold
    result = await session.execute(
        as_system(
            select(Embedding.model_id, Embedding.project_id, Embedding.vector, Project.name)
            .join(Project, Project.id == Embedding.project_id)
            .order_by(Embedding.model_id, Embedding.project_id, Embedding.id)
        )
    )
    grouped: dict[str, dict[str, list[np.ndarray]]] = defaultdict(lambda: defaultdict(list))
    names: dict[str, str] = {}
    for model_id, project_id, vector, project_name in result.all():
        array = np.asarray(vector, dtype=np.float64).reshape(-1)
        norm = float(np.linalg.norm(array))
        if norm == 0.0:
            continue
        grouped[model_id][project_id].append(array / norm)
        names[project_id] = project_name

    rows: list[RollupRow] = []
    for model_id in sorted(grouped):
        per_project = {project_id: np.vstack(vectors) for project_id, vectors in grouped[model_id].items()}
        project_ids = sorted(per_project)
        for i, project1 in enumerate(project_ids):
            for project2 in project_ids[i + 1 :]:
                left = per_project[project1]
                right = per_project[project2]
                distances = np.clip(1.0 - left @ right.T, 0.0, 2.0)
                avg_distance = float(distances.mean())
                if avg_distance >= threshold:
                    continue
                rows.append(
                    {
                        "project1_id": project1,
                        "project2_id": project2,
                        "model_id": model_id,
                        "project1_name": names[project1],
                        "project2_name": names[project2],
                        "avg_distance": _round(avg_distance),
                        "comparison_count": int(distances.size),
                    }
                )
    return rows


ROLLUPS: dict[str, RollupDefinition] = {
    "daily_compliance": RollupDefinition(
        name="daily_compliance",
        model=DailyComplianceRollup,
        compute=compute_daily_compliance,
        order_by=("day", "project_id"),
    ),
    "weekly_performance": RollupDefinition(
        name="weekly_performance",
        model=WeeklyPerformanceRollup,
        compute=compute_weekly_performance,
        order_by=("week_start", "metric_name"),
    ),
    "project_quality": RollupDefinition(
        name="project_quality",
        model=ProjectQualityRollup,
        compute=compute_project_quality,
        order_by=("project_id",),
    ),
    "code_similarity": RollupDefinition(
        name="code_similarity",
        model=CodeSimilarityRollup,
        compute=compute_code_similarity,
        order_by=("model_id", "project1_id", "project2_id"),
    ),
}


def get_definition(name: str) -> RollupDefinition:
    definition = ROLLUPS.get(name)
    if definition is None:
        raise ConstraintViolationError(f"unknown rollup {name!r}", kind="enum", field="rollup")
    return definition


async def refresh_rollup(session: AsyncSession, name: str) -> RollupRefreshResult:
    """Recompute a rollup and publish it atomically.

    New rows are written under version N+1 and the version pointer moves in the
    same transaction, so readers see either the old or the new snapshot. Versions
    older than N are garbage-collected once N+1 is live.
    """
    definition = get_definition(name)
    started = time.monotonic()
    rows = await definition.compute(session)

    pointer_result = await session.execute(
        select(RollupVersion).where(RollupVersion.name == name).with_for_update()
    )
    pointer = pointer_result.scalar_one_or_none()
    if pointer is None:
        pointer = RollupVersion(name=name, active_version=0, row_count=0)
        session.add(pointer)
    new_version = pointer.active_version + 1
    model = definition.model
    if rows:
        await session.execute(insert(model), [{**row, "version": new_version} for row in rows])
    duration_ms = int((time.monotonic() - started) * 1000)
    pointer.active_version = new_version
    pointer.row_count = len(rows)
    pointer.refreshed_at = datetime.now(timezone.utc)
    pointer.refresh_ms = duration_ms
    await session.flush()
    # Keep the previous snapshot for readers that resolved the old pointer mid-refresh.
    await session.execute(
        as_system(delete(model).where(model.version < new_version - 1)).execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info("rollup_refreshed name=%s version=%s rows=%s duration_ms=%s", name, new_version, len(rows), duration_ms)
    return RollupRefreshResult(name=name, version=new_version, row_count=len(rows), duration_ms=duration_ms)


def active_rows(name: str):  # noqa: ANN201
    # Single-statement read of the live snapshot: rollup rows joined to the version pointer.
    definition = get_definition(name)
    model = definition.model
    stmt = (
        select(model)
        .join(RollupVersion, RollupVersion.name == name)
        .where(model.version == RollupVersion.active_version)
    )
    return stmt.order_by(*(getattr(model, column) for column in definition.order_by))


def row_to_dict(row: Base) -> RollupRow:
    # Rollup rows as plain dicts; the version column is an implementation detail.
    return {
        column.key: getattr(row, column.key)
        for column in row.__table__.columns
        if column.key != "version"
    }


async def read_rollup(session: AsyncSession, name: str) -> list[RollupRow]:
    # Unfiltered system view of the live snapshot; actor-facing reads go through services.reporting.
    result = await session.execute(as_system(active_rows(name)))
    return [row_to_dict(row) for row in result.scalars().all()]


async def rollup_status(session: AsyncSession) -> list[dict[str, Any]]:
    result = await session.execute(select(RollupVersion).order_by(RollupVersion.name))
    return [
        {
            "name": pointer.name,
            "active_version": pointer.active_version,
            "row_count": pointer.row_count,
            "refreshed_at": pointer.refreshed_at,
            "refresh_ms": pointer.refresh_ms,
        }
        for pointer in result.scalars().all()
    ]
