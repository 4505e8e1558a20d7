from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from agentforge.core.errors import ConstraintViolationError, NotFoundError
from agentforge.domain.enums import (
    ANALYSIS_STATUSES,
    ANALYSIS_TERMINAL_STATUSES,
    ANALYSIS_TRANSITIONS,
    SEVERITIES,
    require_member,
)
from agentforge.domain.models import Analysis, FileAnalysis, Project, Violation
from agentforge.persistence.guards import ActorScope, as_system
from agentforge.persistence.integrity import classify_integrity_error


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _check_score(value: float | None, *, field: str) -> float | None:
    if value is None:
        return None
    if not 0 <= float(value) <= 100:
        raise ConstraintViolationError(f"{field} must be between 0 and 100", field=field)
    return float(value)


def _transition(analysis: Analysis, target: str) -> None:
    # Terminal analyses are immutable; every other move must be listed in the transition table.
    if target not in ANALYSIS_TRANSITIONS.get(analysis.status, ()):
        raise ConstraintViolationError(
            f"analysis {analysis.id} cannot move from {analysis.status} to {target}",
            kind="transition",
            field="status",
        )
    analysis.status = target


async def create_analysis(
    scope: ActorScope,
    *,
    project_id: str,
    analysis_type: str,
    results: dict[str, Any] | None = None,
) -> Analysis:
    await scope.require_project(project_id, write=True)
    if not (analysis_type or "").strip():
        raise ConstraintViolationError("analysis_type must not be empty", field="analysis_type")
    analysis = Analysis(
        project_id=project_id,
        analysis_type=analysis_type.strip(),
        status="pending",
        results_json=results,
    )
    scope.session.add(analysis)
    try:
        await scope.session.flush()
    except IntegrityError as exc:
        raise classify_integrity_error(exc, resource_type="analysis") from exc
    return analysis


async def get_analysis(scope: ActorScope, analysis_id: str) -> Analysis:
    return await scope.require(Analysis, analysis_id)


async def list_analyses(
    scope: ActorScope,
    *,
    project_id: str,
    status: str | None = None,
) -> list[Analysis]:
    stmt = scope.select(Analysis).where(Analysis.project_id == project_id)
    if status is not None:
        require_member(status, ANALYSIS_STATUSES, field="status")
        stmt = stmt.where(Analysis.status == status)
    return await scope.scalars(stmt.order_by(Analysis.created_at.desc(), Analysis.id.desc()))


async def start_analysis(scope: ActorScope, analysis_id: str) -> Analysis:
    analysis = await scope.require(Analysis, analysis_id, write=True)
    _transition(analysis, "in_progress")
    analysis.started_at = _utc_now()
    await scope.session.flush()
    return analysis


async def _violation_counts(scope: ActorScope, analysis_id: str) -> dict[str, int]:
    # Counts are derived from the stored violations so they can never drift from them.
    stmt = as_system(
        select(Violation.severity, func.count(Violation.id))
        .where(Violation.analysis_id == analysis_id)
        .group_by(Violation.severity)
    )
    result = await scope.session.execute(stmt)
    counts = {severity: 0 for severity in SEVERITIES}
    for severity, count in result.all():
        counts[severity] = int(count)
    return counts


async def complete_analysis(
    scope: ActorScope,
    analysis_id: str,
    *,
    compliance_score: float | None = None,
    quality_score: float | None = None,
    security_score: float | None = None,
    performance_score: float | None = None,
    results: dict[str, Any] | None = None,
) -> Analysis:
    """Finish an in-progress analysis and fold its results into the project.

    Violation counts are recomputed from the analysis's violations, the project's
    ``total_lines`` becomes the line total of this analysis's file analyses (when
    any were recorded), and ``last_analyzed_at`` moves to the completion time.
    """
    analysis = await scope.require(Analysis, analysis_id, write=True)
    scores = {
        "compliance_score": _check_score(compliance_score, field="compliance_score"),
        "quality_score": _check_score(quality_score, field="quality_score"),
        "security_score": _check_score(security_score, field="security_score"),
        "performance_score": _check_score(performance_score, field="performance_score"),
    }
    _transition(analysis, "completed")
    now = _utc_now()
    analysis.completed_at = now
    if analysis.started_at is not None:
        analysis.duration_ms = max(0, int((now - analysis.started_at).total_seconds() * 1000))
    for key, value in scores.items():
        setattr(analysis, key, value)
    if results is not None:
        analysis.results_json = results

    counts = await _violation_counts(scope, analysis.id)
    analysis.critical_violations = counts["critical"]
    analysis.high_violations = counts["high"]
    analysis.medium_violations = counts["medium"]
    analysis.low_violations = counts["low"]
    analysis.info_violations = counts["info"]
    analysis.total_violations = sum(counts.values())

    # Project aggregates are maintained here, after the caller's write access was verified.
    project_result = await scope.session.execute(
        as_system(select(Project).where(Project.id == analysis.project_id).with_for_update())
    )
    project = project_result.scalar_one()
    line_result = await scope.session.execute(
        as_system(
            select(func.count(FileAnalysis.id), func.coalesce(func.sum(FileAnalysis.lines_of_code), 0)).where(
                FileAnalysis.analysis_id == analysis.id
            )
        )
    )
    file_count, total_lines = line_result.one()
    if int(file_count or 0) > 0:
        project.total_lines = int(total_lines or 0)
    project.last_analyzed_at = now
    await scope.session.flush()
    return analysis


async def fail_analysis(scope: ActorScope, analysis_id: str, *, error_message: str) -> Analysis:
    analysis = await scope.require(Analysis, analysis_id, write=True)
    _transition(analysis, "failed")
    analysis.completed_at = _utc_now()
    analysis.error_message = error_message
    await scope.session.flush()
    return analysis


async def cancel_analysis(scope: ActorScope, analysis_id: str) -> Analysis:
    analysis = await scope.require(Analysis, analysis_id, write=True)
    _transition(analysis, "cancelled")
    analysis.completed_at = _utc_now()
    await scope.session.flush()
    return analysis


async def require_open_analysis(scope: ActorScope, analysis_id: str, *, project_id: str | None = None) -> Analysis:
    # Rows may only be attached to a writable, non-terminal analysis of the same project.
    analysis = await scope.require(Analysis, analysis_id, write=True)
    if project_id is not None and analysis.project_id != project_id:
        raise NotFoundError("analysis", analysis_id)
    if analysis.status in ANALYSIS_TERMINAL_STATUSES:
        raise ConstraintViolationError(
            f"analysis {analysis_id} is {analysis.status} and no longer accepts results",
            kind="transition",
            field="analysis_id",
        )
    return analysis


async def add_file_analysis(
    scope: ActorScope,
    *,
    analysis_id: str,
    file_path: str,
    file_type: str | None = None,
    file_size: int | None = None,
    lines_of_code: int | None = None,
    complexity_score: float | None = None,
    quality_score: float | None = None,
    security_score: float | None = None,
    results: dict[str, Any] | None = None,
) -> FileAnalysis:
    analysis = await require_open_analysis(scope, analysis_id)
    if not (file_path or "").strip():
        raise ConstraintViolationError("file_path must not be empty", field="file_path")
    for field, value in (("file_size", file_size), ("lines_of_code", lines_of_code)):
        if value is not None and value < 0:
            raise ConstraintViolationError(f"{field} must not be negative", field=field)
    file_analysis = FileAnalysis(
        project_id=analysis.project_id,
        analysis_id=analysis.id,
        file_path=file_path,
        file_type=file_type,
        file_size=file_size,
        lines_of_code=lines_of_code,
        complexity_score=_check_score(complexity_score, field="complexity_score"),
        quality_score=_check_score(quality_score, field="quality_score"),
        security_score=_check_score(security_score, field="security_score"),
        results_json=results,
    )
    scope.session.add(file_analysis)
    try:
        await scope.session.flush()
    except IntegrityError as exc:
        raise classify_integrity_error(exc, resource_type="file_analysis") from exc
    return file_analysis


async def list_file_analyses(scope: ActorScope, *, analysis_id: str) -> list[FileAnalysis]:
    stmt = (
        scope.select(FileAnalysis)
        .where(FileAnalysis.analysis_id == analysis_id)
        .order_by(FileAnalysis.file_path, FileAnalysis.id)
    )
    return await scope.scalars(stmt)
