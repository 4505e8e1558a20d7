from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Awaitable, Callable, Literal

from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentforge.core.config import get_settings
from agentforge.core.errors import MaintenanceInProgressError, PartialMaintenanceFailure
from agentforge.domain.enums import ANALYSIS_TERMINAL_STATUSES, VIOLATION_RESOLUTION_STATUSES, MaintenanceStatus
from agentforge.domain.models import (
    AccessGrant,
    Analysis,
    AuditEvent,
    Embedding,
    FileAnalysis,
    MaintenanceRun,
    PerformanceMetric,
    Project,
    Violation,
)
from agentforge.persistence.db import SessionLocal
from agentforge.persistence.guards import as_system
from agentforge.persistence.repos.metrics import record_metric
from agentforge.services.coordination import HeldLock, acquire_lock, release_lock
from agentforge.services.rollups import ROLLUPS, latest_completed_analyses, refresh_rollup
from agentforge.services.similarity import build_pending_embeddings, get_index_synchronizer


logger = logging.getLogger(__name__)

StepStatus = Literal["succeeded", "failed", "timed_out", "deferred"]

# Raw tables refreshed by ANALYZE after retention cleanup.
ANALYZED_TABLES = (
    Project.__tablename__,
    Analysis.__tablename__,
    FileAnalysis.__tablename__,
    Violation.__tablename__,
    Embedding.__tablename__,
    PerformanceMetric.__tablename__,
    AuditEvent.__tablename__,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _cutoff(days: int) -> datetime:
    return _utc_now() - timedelta(days=days)


# -- retention -----------------------------------------------------------------------------


async def prune_performance_metrics(session: AsyncSession) -> int:
    # Remove fine-grained metric samples beyond the retention window.
    cutoff = _cutoff(get_settings().performance_metric_retention_days)
    result = await session.execute(delete(PerformanceMetric).where(PerformanceMetric.recorded_at < cutoff))
    return result.rowcount or 0


async def prune_audit_events(session: AsyncSession) -> int:
    # Remove audit events beyond the retention window.
    cutoff = _cutoff(get_settings().audit_retention_days)
    result = await session.execute(
        as_system(delete(AuditEvent).where(AuditEvent.occurred_at < cutoff)).execution_options(
            synchronize_session=False
        )
    )
    return result.rowcount or 0


async def _delete_grants(session: AsyncSession, resource_type: str, ids: list[str]) -> None:
    if ids:
        await session.execute(
            delete(AccessGrant).where(AccessGrant.resource_type == resource_type, AccessGrant.resource_id.in_(ids))
        )


async def prune_file_analyses(session: AsyncSession, *, keep_analysis_ids: set[str] | None = None) -> int:
    # Old per-file results go first; the latest completed analysis of each project keeps its files.
    if keep_analysis_ids is None:
        keep_analysis_ids = {analysis.id for analysis in (await latest_completed_analyses(session)).values()}
    cutoff = _cutoff(get_settings().file_analysis_retention_days)
    stmt = select(FileAnalysis.id).where(FileAnalysis.created_at < cutoff)
    if keep_analysis_ids:
        stmt = stmt.where(FileAnalysis.analysis_id.not_in(keep_analysis_ids))
    ids = list((await session.execute(as_system(stmt))).scalars().all())
    if not ids:
        return 0
    await session.execute(
        as_system(delete(FileAnalysis).where(FileAnalysis.id.in_(ids))).execution_options(synchronize_session=False)
    )
    await _delete_grants(session, "file_analysis", ids)
    return len(ids)


async def prune_analyses(session: AsyncSession, *, keep_analysis_ids: set[str] | None = None) -> int:
    # Terminal analyses age out, except the one each project's statistics are derived from.
    if keep_analysis_ids is None:
        keep_analysis_ids = {analysis.id for analysis in (await latest_completed_analyses(session)).values()}
    cutoff = _cutoff(get_settings().analysis_retention_days)
    stmt = select(Analysis.id).where(
        Analysis.status.in_(ANALYSIS_TERMINAL_STATUSES),
        func.coalesce(Analysis.completed_at, Analysis.created_at) < cutoff,
    )
    if keep_analysis_ids:
        stmt = stmt.where(Analysis.id.not_in(keep_analysis_ids))
    ids = list((await session.execute(as_system(stmt))).scalars().all())
    if not ids:
        return 0
    # File analyses reference analyses with RESTRICT; remove any that outlived their own window.
    file_ids = list(
        (
            await session.execute(as_system(select(FileAnalysis.id).where(FileAnalysis.analysis_id.in_(ids))))
        ).scalars().all()
    )
    if file_ids:
        await session.execute(
            as_system(delete(FileAnalysis).where(FileAnalysis.id.in_(file_ids))).execution_options(
                synchronize_session=False
            )
        )
        await _delete_grants(session, "file_analysis", file_ids)
    await session.execute(
        as_system(delete(Analysis).where(Analysis.id.in_(ids))).execution_options(synchronize_session=False)
    )
    await _delete_grants(session, "analysis", ids)
    return len(ids)


async def prune_resolved_violations(session: AsyncSession) -> int:
    # Closed violations are kept longest; open ones are never pruned.
    cutoff = _cutoff(get_settings().resolved_violation_retention_days)
    ids = list(
        (
            await session.execute(
                as_system(
                    select(Violation.id).where(
                        Violation.status.in_(VIOLATION_RESOLUTION_STATUSES),
                        Violation.resolved_at < cutoff,
                    )
                )
            )
        ).scalars().all()
    )
    if not ids:
        return 0
    await session.execute(
        as_system(delete(Violation).where(Violation.id.in_(ids))).execution_options(synchronize_session=False)
    )
    await _delete_grants(session, "violation", ids)
    return len(ids)


async def prune_maintenance_runs(session: AsyncSession) -> int:
    cutoff = _cutoff(get_settings().maintenance_run_retention_days)
    result = await session.execute(
        delete(MaintenanceRun).where(MaintenanceRun.started_at < cutoff, MaintenanceRun.status != "running")
    )
    return result.rowcount or 0


async def run_retention_cleanup(session: AsyncSession) -> dict[str, int]:
    # Apply every retention window in one transaction; the caller commits.
    keep = {analysis.id for analysis in (await latest_completed_analyses(session)).values()}
    return {
        "performance_metrics": await prune_performance_metrics(session),
        "audit_events": await prune_audit_events(session),
        "file_analyses": await prune_file_analyses(session, keep_analysis_ids=keep),
        "analyses": await prune_analyses(session, keep_analysis_ids=keep),
        "resolved_violations": await prune_resolved_violations(session),
        "maintenance_runs": await prune_maintenance_runs(session),
    }


async def analyze_table_statistics(session: AsyncSession) -> int:
    # Refresh planner statistics for the raw tables (ANALYZE is valid on Postgres and SQLite).
    for table in ANALYZED_TABLES:
        await session.execute(text(f"ANALYZE {table}"))
    return len(ANALYZED_TABLES)


# -- cycle ---------------------------------------------------------------------------------


@dataclass
class MaintenanceStepResult:
    name: str
    status: StepStatus
    duration_ms: int = 0
    detail: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class MaintenanceReport:
    status: MaintenanceStatus
    trigger: str
    started_at: datetime
    finished_at: datetime | None = None
    run_id: str | None = None
    steps: list[MaintenanceStepResult] = field(default_factory=list)

    @property
    def failed_steps(self) -> list[MaintenanceStepResult]:
        return [step for step in self.steps if step.status != "succeeded"]

    def step(self, name: str) -> MaintenanceStepResult | None:
        return next((step for step in self.steps if step.name == name), None)

    def raise_for_status(self) -> None:
        # Surface partial and total failures to callers that want an exception.
        if self.status in ("partially_failed", "failed"):
            raise PartialMaintenanceFailure(self)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


StepRunner = Callable[[], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class MaintenanceStep:
    name: str
    run: StepRunner


def default_steps(session_factory: async_sessionmaker[AsyncSession]) -> list[MaintenanceStep]:
    """Rollup refreshes first, each in its own transaction, then housekeeping.

    Steps never share a session, so a failure or timeout in one rolls back only
    that step's work.
    """
    settings = get_settings()

    def _rollup(name: str) -> StepRunner:
        async def _run() -> dict[str, Any]:
            async with session_factory() as session:
                result = await refresh_rollup(session, name)
            return {"version": result.version, "rows": result.row_count}

        return _run

    async def _retention() -> dict[str, Any]:
        async with session_factory() as session:
            counts = await run_retention_cleanup(session)
            await session.commit()
        return counts

    async def _statistics() -> dict[str, Any]:
        async with session_factory() as session:
            tables = await analyze_table_statistics(session)
            await session.commit()
        return {"tables": tables}

    async def _index_build() -> dict[str, Any]:
        report = await build_pending_embeddings(session_factory=session_factory)
        return {"indexed": len(report.indexed), "failed": len(report.failed)}

    steps = [MaintenanceStep(name=f"rollup:{name}", run=_rollup(name)) for name in ROLLUPS]
    steps.append(MaintenanceStep(name="retention", run=_retention))
    if settings.maintenance_analyze_tables:
        steps.append(MaintenanceStep(name="statistics", run=_statistics))
    steps.append(MaintenanceStep(name="index_build", run=_index_build))
    return steps


def _final_status(steps: list[MaintenanceStepResult]) -> MaintenanceStatus:
    succeeded = sum(1 for step in steps if step.status == "succeeded")
    if succeeded == len(steps):
        return "succeeded"
    if succeeded == 0:
        return "failed"
    return "partially_failed"


class MaintenanceScheduler:
    """Runs maintenance cycles: idle -> running -> succeeded | partially_failed | failed.

    Only one cycle runs at a time per process (and across processes when Redis
    is configured). Each step gets the remaining wall-clock budget; a step that
    overruns is cancelled and rolled back, and the steps after it are deferred
    to the next cycle.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        steps: list[MaintenanceStep] | None = None,
        budget_s: float | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._steps = steps
        self._budget_s = budget_s
        self.state: MaintenanceStatus = "idle"
        self.last_report: MaintenanceReport | None = None

    async def _acquire(self) -> HeldLock:
        settings = get_settings()
        lock = await acquire_lock(settings.maintenance_lock_key, ttl_s=settings.maintenance_lock_ttl_s)
        if lock is None:
            raise MaintenanceInProgressError("maintenance cycle already running")
        return lock

    async def run_cycle(self, *, trigger: str = "schedule") -> MaintenanceReport:
        # Raises MaintenanceInProgressError when another cycle holds the lock.
        lock = await self._acquire()
        try:
            self.state = "running"
            report = await self._run_steps(trigger=trigger)
            self.state = report.status
            self.last_report = report
            return report
        except BaseException:
            self.state = "failed"
            raise
        finally:
            await release_lock(lock)

    async def _run_steps(self, *, trigger: str) -> MaintenanceReport:
        settings = get_settings()
        budget = self._budget_s if self._budget_s is not None else settings.maintenance_cycle_budget_s
        steps = self._steps if self._steps is not None else default_steps(self._session_factory)
        report = MaintenanceReport(status="running", trigger=trigger, started_at=_utc_now())
        report.run_id = await self._record_start(report)
        logger.info("maintenance_cycle_started run_id=%s trigger=%s steps=%s", report.run_id, trigger, len(steps))

        deadline = time.monotonic() + budget
        exhausted = False
        for step in steps:
            remaining = deadline - time.monotonic()
            if exhausted or remaining <= 0:
                exhausted = True
                report.steps.append(MaintenanceStepResult(name=step.name, status="deferred"))
                continue
            started = time.monotonic()
            try:
                detail = await asyncio.wait_for(step.run(), timeout=remaining)
            except asyncio.TimeoutError:
                exhausted = True
                result = MaintenanceStepResult(name=step.name, status="timed_out", error="cycle budget exhausted")
                logger.warning("maintenance_step_timed_out run_id=%s step=%s", report.run_id, step.name)
            except Exception as exc:  # noqa: BLE001 - one failing step must not stop the others.
                result = MaintenanceStepResult(name=step.name, status="failed", error=str(exc) or type(exc).__name__)
                logger.exception("maintenance_step_failed run_id=%s step=%s", report.run_id, step.name)
            else:
                result = MaintenanceStepResult(name=step.name, status="succeeded", detail=dict(detail or {}))
            result.duration_ms = int((time.monotonic() - started) * 1000)
            report.steps.append(result)

        report.status = _final_status(report.steps)
        report.finished_at = _utc_now()
        await self._record_finish(report)
        logger.info(
            "maintenance_cycle_finished run_id=%s status=%s failed=%s",
            report.run_id,
            report.status,
            ",".join(step.name for step in report.failed_steps) or "-",
        )
        return report

    async def _record_start(self, report: MaintenanceReport) -> str | None:
        try:
            async with self._session_factory() as session:
                run = MaintenanceRun(status="running", trigger=report.trigger, started_at=report.started_at)
                session.add(run)
                await session.commit()
                return run.id
        except SQLAlchemyError as exc:
            logger.warning("maintenance_run_record_failed phase=start", exc_info=exc)
            return None

    async def _record_finish(self, report: MaintenanceReport) -> None:
        # Bookkeeping is best effort; a broken metrics write must not change the cycle outcome.
        duration_s = ((report.finished_at or _utc_now()) - report.started_at).total_seconds()
        tags = {"status": report.status, "trigger": report.trigger, "run_id": report.run_id}
        try:
            async with self._session_factory() as session:
                if report.run_id is not None:
                    run = await session.get(MaintenanceRun, report.run_id)
                    if run is not None:
                        run.status = report.status
                        run.finished_at = report.finished_at
                        run.details_json = {
                            "steps": [
                                {
                                    "name": step.name,
                                    "status": step.status,
                                    "duration_ms": step.duration_ms,
                                    "error": step.error,
                                }
                                for step in report.steps
                            ]
                        }
                metric_name = "maintenance_completed" if report.status == "succeeded" else "maintenance_failed"
                await record_metric(session, name=metric_name, value=report.started_at.timestamp(), tags=tags)
                await record_metric(session, name="maintenance_cycle_duration", value=duration_s, unit="s", tags=tags)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("maintenance_run_record_failed phase=finish run_id=%s", report.run_id, exc_info=exc)


_scheduler: MaintenanceScheduler | None = None


def get_scheduler() -> MaintenanceScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = MaintenanceScheduler()
    return _scheduler


async def run_maintenance_cycle(
    *,
    trigger: str = "manual",
    scheduler: MaintenanceScheduler | None = None,
) -> MaintenanceReport:
    # On-demand trigger: a duplicate call reports "already_running" instead of starting a second cycle.
    active = scheduler or get_scheduler()
    try:
        return await active.run_cycle(trigger=trigger)
    except MaintenanceInProgressError:
        logger.info("maintenance_cycle_skipped reason=already_running trigger=%s", trigger)
        return MaintenanceReport(status="already_running", trigger=trigger, started_at=_utc_now(), finished_at=_utc_now())


async def run_maintenance_loop() -> None:
    # Run maintenance on a fixed cadence and continue after failures to keep rollups fresh.
    interval = max(5, int(get_settings().maintenance_interval_s))
    while True:
        try:
            await run_maintenance_cycle(trigger="schedule")
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("maintenance cycle failed")
        await asyncio.sleep(interval)


async def run_index_build_loop() -> None:
    # Drain pending embeddings continuously so new vectors become searchable within one interval.
    interval = max(1, int(get_settings().index_build_interval_s))
    while True:
        try:
            await build_pending_embeddings()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("embedding index build failed")
        await asyncio.sleep(interval)


async def run_index_sync_loop() -> None:
    # Pull rows indexed by other processes into this process's memory index.
    interval = max(1, int(get_settings().index_sync_interval_s))
    synchronizer = get_index_synchronizer()
    while True:
        try:
            await synchronizer.sync()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("vector index sync failed")
        await asyncio.sleep(interval)
