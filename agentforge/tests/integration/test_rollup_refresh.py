from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from agentforge.core.config import get_settings
from agentforge.core.errors import ConstraintViolationError, NotFoundError
from agentforge.domain.models import CodeSimilarityRollup, DailyComplianceRollup, ProjectQualityRollup, RollupVersion
from agentforge.persistence.db import SessionLocal
from agentforge.persistence.guards import ActorScope, TenantPredicateError, as_system
from agentforge.persistence.repos import grants as grants_repo
from agentforge.persistence.repos.metrics import record_metric
from agentforge.services.reporting import (
    get_compliance_trend,
    get_performance_trend,
    get_quality_overview,
    get_similarity_clusters,
)
from agentforge.services.rollups import ROLLUPS, read_rollup, refresh_rollup, rollup_status
from agentforge.tests.utils.factories import (
    create_test_project,
    create_test_user,
    insert_test_embedding,
    register_test_model,
    run_completed_analysis,
)


async def _seed_every_rollup() -> None:
    # Enough data that each rollup publishes at least one row.
    owner = await create_test_user()
    alpha = await create_test_project(owner, name="alpha")
    beta = await create_test_project(owner, name="beta")
    await run_completed_analysis(owner, project_id=alpha, severities=("high",), compliance_score=90.0)
    await register_test_model()
    await insert_test_embedding(owner, project_id=alpha, vector=[1, 0, 0, 0], content="a")
    await insert_test_embedding(owner, project_id=beta, vector=[1, 0.05, 0, 0], content="b")
    async with SessionLocal() as session:
        await record_metric(session, name="api_latency_ms", value=12.0, unit="ms")
        await session.commit()


@pytest.mark.asyncio
@pytest.mark.parametrize("name", sorted(ROLLUPS))
async def test_refresh_is_reproducible_and_versions_are_collected(name: str) -> None:
    await _seed_every_rollup()
    model = ROLLUPS[name].model

    async with SessionLocal() as session:
        first = await refresh_rollup(session, name)
        rows_first = await read_rollup(session, name)
        second = await refresh_rollup(session, name)
        rows_second = await read_rollup(session, name)
        third = await refresh_rollup(session, name)
        versions = (
            await session.execute(as_system(select(model.version).distinct().order_by(model.version)))
        ).scalars().all()

    assert (first.version, second.version, third.version) == (1, 2, 3)
    assert rows_first
    assert rows_first == rows_second
    assert all("version" not in row for row in rows_first)
    # Only the live snapshot and its predecessor survive.
    assert versions == [2, 3]


@pytest.mark.asyncio
async def test_project_keyed_rollups_reject_untagged_reads() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    async with SessionLocal() as session:
        await refresh_rollup(session, "project_quality")
        for model in (DailyComplianceRollup, ProjectQualityRollup, CodeSimilarityRollup):
            with pytest.raises(TenantPredicateError):
                await session.execute(select(model))
        scope = ActorScope(session, owner.actor)
        scoped = await scope.scalars(
            scope.tag(select(ProjectQualityRollup).where(ProjectQualityRollup.project_id.in_(scope.visible_project_ids())))
        )
    assert [row.project_id for row in scoped] == [project_id]


def test_statement_guard_has_no_settings_switch() -> None:
    assert not hasattr(get_settings(), "authz_require_tenant_predicate")


@pytest.mark.asyncio
async def test_rollups_reflect_data_only_after_refresh() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await run_completed_analysis(owner, project_id=project_id, severities=("low",))

    async with SessionLocal() as session:
        await refresh_rollup(session, "project_quality")
    await run_completed_analysis(owner, project_id=project_id, severities=("critical",))

    async with SessionLocal() as session:
        stale = await get_quality_overview(session, actor=owner.actor)
        assert stale[0]["total_violations"] == 1
        await refresh_rollup(session, "project_quality")
        fresh = await get_quality_overview(session, actor=owner.actor)
    assert fresh[0]["total_violations"] == 2
    assert fresh[0]["critical_violations"] == 1


@pytest.mark.asyncio
async def test_daily_compliance_counts_against_threshold() -> None:
    owner = await create_test_user()
    stranger = await create_test_user()
    project_id = await create_test_project(owner)
    await run_completed_analysis(owner, project_id=project_id, compliance_score=90.0)
    await run_completed_analysis(owner, project_id=project_id, compliance_score=70.0)

    async with SessionLocal() as session:
        await refresh_rollup(session, "daily_compliance")
        points = await get_compliance_trend(session, project_id=project_id, actor=owner.actor, days_back=7)
        row_count = (await session.execute(as_system(select(func.count()).select_from(DailyComplianceRollup)))).scalar()

    assert row_count == 1
    assert len(points) == 1
    point = points[0]
    assert point.day == datetime.now(timezone.utc).date()
    assert point.avg_score == pytest.approx(80.0)
    assert (point.total_checks, point.compliant_checks, point.non_compliant_checks) == (2, 1, 1)

    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await get_compliance_trend(session, project_id=project_id, actor=stranger.actor)
        with pytest.raises(ConstraintViolationError):
            await get_compliance_trend(session, project_id=project_id, actor=owner.actor, days_back=0)


@pytest.mark.asyncio
async def test_weekly_performance_uses_population_std_dev() -> None:
    owner = await create_test_user()
    now = datetime.now(timezone.utc)
    week_start = now.date() - timedelta(days=now.weekday())
    recorded = datetime(week_start.year, week_start.month, week_start.day, 12, tzinfo=timezone.utc)
    async with SessionLocal() as session:
        for value in (2.0, 4.0, 4.0, 4.0, 5.0, 5.0, 7.0, 9.0):
            await record_metric(session, name="api_latency_ms", value=value, unit="ms", recorded_at=recorded)
        await session.commit()
        await refresh_rollup(session, "weekly_performance")
        rows = await get_performance_trend(session, actor=owner.actor, metric_name="api_latency_ms", weeks_back=1)

    assert len(rows) == 1
    row = rows[0]
    assert row["week_start"] == week_start
    assert row["sample_count"] == 8
    assert row["avg_value"] == pytest.approx(5.0)
    assert (row["min_value"], row["max_value"]) == (2.0, 9.0)
    assert row["std_dev"] == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_quality_overview_is_filtered_by_visibility() -> None:
    owner = await create_test_user()
    other = await create_test_user()
    mine = await create_test_project(owner, name="mine")
    await create_test_project(other, name="theirs")

    async with SessionLocal() as session:
        await refresh_rollup(session, "project_quality")
        rows = await get_quality_overview(session, actor=owner.actor)
    assert [row["project_id"] for row in rows] == [mine]


@pytest.mark.asyncio
async def test_similarity_clusters_need_both_projects_visible() -> None:
    owner = await create_test_user()
    other = await create_test_user()
    first = await create_test_project(owner, name="first")
    second = await create_test_project(owner, name="second")
    foreign = await create_test_project(other, name="foreign")
    await register_test_model()
    await insert_test_embedding(owner, project_id=first, vector=[1, 0, 0, 0], content="a")
    await insert_test_embedding(owner, project_id=second, vector=[1, 0.05, 0, 0], content="b")
    await insert_test_embedding(other, project_id=foreign, vector=[1, 0, 0.05, 0], content="c")

    async with SessionLocal() as session:
        await refresh_rollup(session, "code_similarity")
        rows = await get_similarity_clusters(session, actor=owner.actor)
        status = {entry["name"]: entry for entry in await rollup_status(session)}

    assert [(row["project1_id"], row["project2_id"]) for row in rows] == [tuple(sorted((first, second)))]
    assert rows[0]["comparison_count"] == 1
    assert rows[0]["avg_distance"] < 0.3
    # Three close projects give three pairs; the two involving "foreign" stay hidden.
    assert status["code_similarity"]["row_count"] == 3

    async with SessionLocal() as session:
        await grants_repo.grant_access(
            ActorScope(session, other.actor),
            user_id=owner.user_id,
            resource_type="project",
            resource_id=foreign,
        )
        await session.commit()
        visible = await get_similarity_clusters(session, actor=owner.actor)
    assert len(visible) == 3


@pytest.mark.asyncio
async def test_version_pointer_tracks_refresh_metadata() -> None:
    async with SessionLocal() as session:
        await refresh_rollup(session, "daily_compliance")
        pointer = (
            await session.execute(select(RollupVersion).where(RollupVersion.name == "daily_compliance"))
        ).scalar_one()
    assert pointer.active_version == 1
    assert pointer.row_count == 0
    assert pointer.refreshed_at is not None
