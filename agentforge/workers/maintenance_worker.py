from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from agentforge.core.config import get_settings
from agentforge.core.logging import configure_logging
from agentforge.services.maintenance import run_index_build_loop, run_index_sync_loop, run_maintenance_cycle
from agentforge.services.similarity import rebuild_vector_index

logger = logging.getLogger(__name__)


async def maintenance_cycle_job(ctx, trigger: str = "schedule") -> str:
    # Queue-triggered and cron-triggered cycles share the same lock and return the final status.
    report = await run_maintenance_cycle(trigger=trigger)
    if report.failed_steps:
        logger.warning(
            "maintenance_cycle_incomplete status=%s steps=%s",
            report.status,
            ",".join(step.name for step in report.failed_steps),
        )
    return report.status


async def scheduled_maintenance(ctx) -> str:
    return await maintenance_cycle_job(ctx, trigger="schedule")


async def _startup(ctx) -> None:
    # Rebuild the process-local index, then keep draining pending embeddings beside the cron jobs.
    configure_logging()
    await rebuild_vector_index()
    ctx["index_build_task"] = asyncio.create_task(run_index_build_loop())
    if get_settings().vector_index_backend == "memory":
        # Other workers build their own batches and retention deletes rows; follow both.
        ctx["index_sync_task"] = asyncio.create_task(run_index_sync_loop())


async def _shutdown(ctx) -> None:
    # Cancel the index tasks on shutdown to avoid dangling coroutines in tests and local runs.
    for key in ("index_build_task", "index_sync_task"):
        task = ctx.get(key)
        if task:
            task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url or "redis://localhost:6379/0")
    queue_name = "agentforge:maintenance"
    functions = [maintenance_cycle_job]
    # Hourly at minute 0; the cycle lock makes overlapping triggers report already_running.
    cron_jobs = [cron(scheduled_maintenance, minute=0, run_at_startup=False)]
    on_startup = _startup
    on_shutdown = _shutdown
