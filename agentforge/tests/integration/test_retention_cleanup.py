from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from agentforge.domain.models import Analysis, AuditEvent, FileAnalysis, PerformanceMetric, Violation
from agentforge.persistence.db import SessionLocal
from agentforge.persistence.guards import ActorScope, as_system
from agentforge.persistence.repos import violations as violations_repo
from agentforge.persistence.repos.metrics import record_metric
from agentforge.services.audit import record_event
from agentforge.services.maintenance import run_retention_cleanup
from agentforge.tests.utils.factories import create_test_project, create_test_user, run_completed_analysis


def _days_ago(days: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


@pytest.mark.asyncio
async def test_retention_prunes_old_rows_but_keeps_latest_analysis() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    old_id = await run_completed_analysis(
        owner, project_id=project_id, severities=("low",), files=({"file_path": "old.py"},)
    )
    latest_id = await run_completed_analysis(owner, project_id=project_id, files=({"file_path": "new.py"},))

    async with SessionLocal() as session:
        scope = ActorScope(session, owner.actor)
        violation = (await violations_repo.list_violations(scope, project_id=project_id))[0]
        await violations_repo.update_violation_status(scope, violation.id, status="resolved")
        await record_metric(session, name="old_metric", value=1.0, recorded_at=_days_ago(400))
        await record_metric(session, name="fresh_metric", value=1.0)
        await session.commit()
    await record_event(actor_id=owner.user_id, event_type="test.event", best_effort=False)

    # Age everything except the latest analysis beyond every retention window.
    async with SessionLocal() as session:
        long_ago = _days_ago(1000)
        await session.execute(
            as_system(update(Analysis).values(created_at=long_ago, completed_at=long_ago)).execution_options(
                synchronize_session=False
            )
        )
        await session.execute(
            as_system(update(FileAnalysis).values(created_at=long_ago)).execution_options(synchronize_session=False)
        )
        await session.execute(
            as_system(update(Violation).values(resolved_at=long_ago)).execution_options(synchronize_session=False)
        )
        await session.execute(
            as_system(update(AuditEvent).values(occurred_at=long_ago)).execution_options(synchronize_session=False)
        )
        await session.execute(
            as_system(update(Analysis).where(Analysis.id == latest_id).values(completed_at=_days_ago(1)))
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    async with SessionLocal() as session:
        counts = await run_retention_cleanup(session)
        await session.commit()

    assert counts["performance_metrics"] == 1
    # The resolution staged its own event beside the explicit one.
    assert counts["audit_events"] == 2
    assert counts["file_analyses"] == 1
    assert counts["analyses"] == 1
    assert counts["resolved_violations"] == 1

    async with SessionLocal() as session:
        analyses = (await session.execute(as_system(select(Analysis.id)))).scalars().all()
        files = (await session.execute(as_system(select(FileAnalysis.file_path)))).scalars().all()
        metrics = (await session.execute(select(PerformanceMetric.metric_name))).scalars().all()
    assert analyses == [latest_id]
    assert old_id not in analyses
    assert files == ["new.py"]
    assert metrics == ["fresh_metric"]


@pytest.mark.asyncio
async def test_open_violations_are_never_pruned() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await run_completed_analysis(owner, project_id=project_id, severities=("critical",))

    async with SessionLocal() as session:
        counts = await run_retention_cleanup(session)
        await session.commit()
        remaining = (await session.execute(as_system(select(Violation.id)))).scalars().all()
    assert counts["resolved_violations"] == 0
    assert len(remaining) == 1
