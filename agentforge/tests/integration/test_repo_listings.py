from __future__ import annotations

import pytest

from agentforge.core.errors import ConstraintViolationError, NotFoundError
from agentforge.persistence.db import SessionLocal
from agentforge.persistence.guards import ActorScope
from agentforge.persistence.repos import analyses as analyses_repo
from agentforge.persistence.repos import audit as audit_repo
from agentforge.persistence.repos import embeddings as embeddings_repo
from agentforge.persistence.repos import grants as grants_repo
from agentforge.persistence.repos import metrics as metrics_repo
from agentforge.persistence.repos import violations as violations_repo
from agentforge.services.audit import record_event
from agentforge.services.maintenance import run_maintenance_cycle
from agentforge.tests.utils.factories import (
    TEST_MODEL_ID,
    create_test_project,
    create_test_user,
    insert_test_embedding,
    register_test_model,
    run_completed_analysis,
)


@pytest.mark.asyncio
async def test_grants_are_listed_and_revoked_by_the_owner() -> None:
    owner = await create_test_user()
    reader = await create_test_user()
    project_id = await create_test_project(owner)

    async with SessionLocal() as session:
        scope = ActorScope(session, owner.actor)
        grant = await grants_repo.grant_access(
            scope, user_id=reader.user_id, resource_type="project", resource_id=project_id
        )
        await session.commit()
        grant_id = grant.id

    async with SessionLocal() as session:
        # Grantees cannot manage grants on a project they only read.
        with pytest.raises(NotFoundError):
            await grants_repo.list_grants(
                ActorScope(session, reader.actor), resource_type="project", resource_id=project_id
            )
        scope = ActorScope(session, owner.actor)
        listed = await grants_repo.list_grants(scope, resource_type="project", resource_id=project_id)
        assert [row.id for row in listed] == [grant_id]
        await grants_repo.revoke_access(scope, grant_id=grant_id)
        await session.commit()

    async with SessionLocal() as session:
        scope = ActorScope(session, owner.actor)
        assert await grants_repo.list_grants(scope, resource_type="project", resource_id=project_id) == []
        with pytest.raises(NotFoundError):
            await grants_repo.revoke_access(scope, grant_id=grant_id)


@pytest.mark.asyncio
async def test_analyses_and_files_are_listed_per_project() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    completed_id = await run_completed_analysis(
        owner,
        project_id=project_id,
        files=({"file_path": "b.py", "lines_of_code": 3}, {"file_path": "a.py", "lines_of_code": 7}),
    )

    async with SessionLocal() as session:
        scope = ActorScope(session, owner.actor)
        pending = await analyses_repo.create_analysis(scope, project_id=project_id, analysis_type="security")
        cancelled = await analyses_repo.cancel_analysis(scope, pending.id)
        assert cancelled.status == "cancelled"
        assert cancelled.completed_at is not None
        with pytest.raises(ConstraintViolationError):
            await analyses_repo.cancel_analysis(scope, pending.id)
        await session.commit()

    async with SessionLocal() as session:
        scope = ActorScope(session, owner.actor)
        everything = await analyses_repo.list_analyses(scope, project_id=project_id)
        only_completed = await analyses_repo.list_analyses(scope, project_id=project_id, status="completed")
        files = await analyses_repo.list_file_analyses(scope, analysis_id=completed_id)

    assert len(everything) == 2
    assert [row.id for row in only_completed] == [completed_id]
    assert [row.file_path for row in files] == ["a.py", "b.py"]


@pytest.mark.asyncio
async def test_violation_and_embedding_reads_respect_scope() -> None:
    owner = await create_test_user()
    stranger = await create_test_user()
    project_id = await create_test_project(owner)
    await run_completed_analysis(owner, project_id=project_id, severities=("medium",))
    await register_test_model()
    await insert_test_embedding(owner, project_id=project_id, vector=[0, 0, 1, 0], content="snippet")

    async with SessionLocal() as session:
        scope = ActorScope(session, owner.actor)
        (violation,) = await violations_repo.list_violations(scope, project_id=project_id)
        fetched = await violations_repo.get_violation(scope, violation.id)
        pending = await embeddings_repo.list_embeddings(
            scope, project_id=project_id, model_id=TEST_MODEL_ID, index_status="pending"
        )
        indexed = await embeddings_repo.list_embeddings(scope, project_id=project_id, index_status="indexed")

        stranger_scope = ActorScope(session, stranger.actor)
        with pytest.raises(NotFoundError):
            await violations_repo.get_violation(stranger_scope, violation.id)
        assert await embeddings_repo.list_embeddings(stranger_scope, project_id=project_id) == []
        with pytest.raises(ConstraintViolationError):
            await embeddings_repo.list_embeddings(scope, project_id=project_id, index_status="queued")

    assert fetched.severity == "medium"
    assert len(pending) == 1
    assert indexed == []


@pytest.mark.asyncio
async def test_audit_events_are_visible_to_their_actor_and_admins() -> None:
    admin = await create_test_user(role="admin")
    actor = await create_test_user()
    other = await create_test_user()
    await record_event(actor_id=actor.user_id, event_type="project.exported", resource_type="project")

    async with SessionLocal() as session:
        own = await audit_repo.list_events(ActorScope(session, actor.actor), event_type="project.exported")
        foreign = await audit_repo.list_events(ActorScope(session, other.actor))
        seen_by_admin = await audit_repo.list_events(ActorScope(session, admin.actor), outcome="success")

    assert [event.actor_id for event in own] == [actor.user_id]
    assert foreign == []
    assert len(seen_by_admin) == 1


@pytest.mark.asyncio
async def test_maintenance_cycle_records_completion_metrics() -> None:
    report = await run_maintenance_cycle(trigger="manual")
    assert report.status == "succeeded"

    async with SessionLocal() as session:
        completed = await metrics_repo.list_metrics(session, name="maintenance_completed")
        durations = await metrics_repo.list_metrics(session, name="maintenance_cycle_duration")

    assert len(completed) == 1
    assert len(durations) == 1
    assert durations[0].metric_unit == "s"
