from __future__ import annotations

from datetime import datetime, timezone
import math
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agentforge.core.errors import ConstraintViolationError
from agentforge.domain.models import PerformanceMetric


async def record_metric(
    session: AsyncSession,
    *,
    name: str,
    value: float,
    unit: str | None = None,
    tags: dict[str, Any] | None = None,
    recorded_at: datetime | None = None,
) -> PerformanceMetric:
    # Metrics are system-wide samples; the weekly performance rollup aggregates them.
    if not (name or "").strip():
        raise ConstraintViolationError("metric name must not be empty", field="metric_name")
    if not math.isfinite(float(value)):
        raise ConstraintViolationError("metric value must be finite", field="metric_value")
    metric = PerformanceMetric(
        metric_name=name.strip(),
        metric_value=float(value),
        metric_unit=unit,
        tags_json=tags,
        recorded_at=recorded_at or datetime.now(timezone.utc),
    )
    session.add(metric)
    await session.flush()
    return metric


async def list_metrics(
    session: AsyncSession,
    *,
    name: str,
    since: datetime | None = None,
    limit: int = 500,
) -> list[PerformanceMetric]:
    stmt = select(PerformanceMetric).where(PerformanceMetric.metric_name == name)
    if since is not None:
        stmt = stmt.where(PerformanceMetric.recorded_at >= since)
    stmt = stmt.order_by(PerformanceMetric.recorded_at.desc(), PerformanceMetric.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
