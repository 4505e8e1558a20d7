from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from agentforge.core.errors import AccessDeniedError, NotFoundError
from agentforge.domain.models import Analysis, Project, Violation
from agentforge.persistence.db import SessionLocal
from agentforge.persistence.guards import Actor, ActorScope, TenantPredicateError, as_system
from agentforge.persistence.repos import analyses as analyses_repo
from agentforge.persistence.repos import grants as grants_repo
from agentforge.persistence.repos import projects as projects_repo
from agentforge.persistence.repos import violations as violations_repo
from agentforge.persistence.repos.users import deactivate_user, set_user_role
from agentforge.tests.utils.factories import create_test_project, create_test_user, run_completed_analysis


@pytest.mark.asyncio
async def test_unscoped_statement_on_tenant_table_is_rejected() -> None:
    async with SessionLocal() as session:
        with pytest.raises(TenantPredicateError):
            await session.execute(select(Project))
        # Explicitly tagged system statements are allowed through.
        result = await session.execute(as_system(select(Project)))
        assert result.scalars().all() == []


@pytest.mark.asyncio
async def test_scope_refuses_statements_it_did_not_build() -> None:
    owner = await create_test_user()
    other = await create_test_user()
    async with SessionLocal() as session:
        scope = ActorScope(session, owner.actor)
        foreign = ActorScope(session, other.actor).select(Project)
        with pytest.raises(TenantPredicateError):
            await scope.execute(foreign)
        with pytest.raises(TenantPredicateError):
            ActorScope(session, Actor(user_id=""))


@pytest.mark.asyncio
async def test_children_follow_project_visibility() -> None:
    owner = await create_test_user()
    stranger = await create_test_user()
    project_id = await create_test_project(owner)
    analysis_id = await run_completed_analysis(owner, project_id=project_id, severities=("high",))

    async with SessionLocal() as session:
        scope = ActorScope(session, stranger.actor)
        assert await projects_repo.list_projects(scope) == []
        assert await violations_repo.list_violations(scope, project_id=project_id) == []
        with pytest.raises(NotFoundError):
            await analyses_repo.get_analysis(scope, analysis_id)

        owner_scope = ActorScope(session, owner.actor)
        assert len(await violations_repo.list_violations(owner_scope, project_id=project_id)) == 1


@pytest.mark.asyncio
async def test_read_grant_allows_reads_but_not_writes() -> None:
    owner = await create_test_user()
    reader = await create_test_user()
    project_id = await create_test_project(owner)

    async with SessionLocal() as session:
        await grants_repo.grant_access(
            ActorScope(session, owner.actor),
            user_id=reader.user_id,
            resource_type="project",
            resource_id=project_id,
        )
        await session.commit()

    async with SessionLocal() as session:
        scope = ActorScope(session, reader.actor)
        project = await projects_repo.get_project(scope, project_id)
        assert project.id == project_id
        with pytest.raises(NotFoundError):
            await analyses_repo.create_analysis(scope, project_id=project_id, analysis_type="full")
        with pytest.raises(NotFoundError):
            await projects_repo.update_project(scope, project_id, name="renamed")


@pytest.mark.asyncio
async def test_write_grant_allows_child_writes_but_not_management() -> None:
    owner = await create_test_user()
    writer = await create_test_user()
    project_id = await create_test_project(owner)

    async with SessionLocal() as session:
        await grants_repo.grant_access(
            ActorScope(session, owner.actor),
            user_id=writer.user_id,
            resource_type="project",
            resource_id=project_id,
            permission="write",
        )
        await session.commit()

    async with SessionLocal() as session:
        scope = ActorScope(session, writer.actor)
        analysis = await analyses_repo.create_analysis(scope, project_id=project_id, analysis_type="full")
        assert analysis.project_id == project_id
        with pytest.raises(NotFoundError):
            await projects_repo.set_project_status(scope, project_id, status="archived")
        with pytest.raises(NotFoundError):
            await projects_repo.delete_project(scope, project_id, cascade=True)


@pytest.mark.asyncio
async def test_expired_grant_grants_nothing() -> None:
    owner = await create_test_user()
    reader = await create_test_user()
    project_id = await create_test_project(owner)

    async with SessionLocal() as session:
        await grants_repo.grant_access(
            ActorScope(session, owner.actor),
            user_id=reader.user_id,
            resource_type="project",
            resource_id=project_id,
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        await session.commit()

    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await projects_repo.get_project(ActorScope(session, reader.actor), project_id)


@pytest.mark.asyncio
async def test_grant_on_single_violation_does_not_expose_project() -> None:
    owner = await create_test_user()
    reviewer = await create_test_user()
    project_id = await create_test_project(owner)
    await run_completed_analysis(owner, project_id=project_id, severities=("critical", "low"))

    async with SessionLocal() as session:
        owner_scope = ActorScope(session, owner.actor)
        violation = (await violations_repo.list_violations(owner_scope, project_id=project_id))[0]
        await grants_repo.grant_access(
            owner_scope,
            user_id=reviewer.user_id,
            resource_type="violation",
            resource_id=violation.id,
        )
        await session.commit()
        violation_id = violation.id

    async with SessionLocal() as session:
        scope = ActorScope(session, reviewer.actor)
        visible = await violations_repo.list_violations(scope, project_id=project_id)
        assert [row.id for row in visible] == [violation_id]
        with pytest.raises(NotFoundError):
            await projects_repo.get_project(scope, project_id)


@pytest.mark.asyncio
async def test_admin_sees_everything_and_viewer_cannot_create() -> None:
    owner = await create_test_user()
    admin = await create_test_user(role="admin")
    viewer = await create_test_user(role="viewer")
    project_id = await create_test_project(owner)

    async with SessionLocal() as session:
        admin_scope = ActorScope(session, admin.actor)
        assert [project.id for project in await projects_repo.list_projects(admin_scope)] == [project_id]
        with pytest.raises(AccessDeniedError):
            await projects_repo.create_project(ActorScope(session, viewer.actor), name="nope")


@pytest.mark.asyncio
async def test_role_changes_and_deactivation_apply_immediately() -> None:
    owner = await create_test_user()
    admin = await create_test_user(role="admin")
    project_id = await create_test_project(owner)

    async with SessionLocal() as session:
        with pytest.raises(AccessDeniedError):
            await set_user_role(ActorScope(session, owner.actor), user_id=admin.user_id, role="viewer")

        await set_user_role(ActorScope(session, admin.actor), user_id=owner.user_id, role="viewer")
        await session.commit()

    async with SessionLocal() as session:
        scope = ActorScope(session, owner.actor)
        # Viewers keep read access to their own projects but lose write access.
        assert (await projects_repo.get_project(scope, project_id)).id == project_id
        with pytest.raises(NotFoundError):
            await analyses_repo.create_analysis(scope, project_id=project_id, analysis_type="full")

        await deactivate_user(ActorScope(session, admin.actor), user_id=owner.user_id)
        await session.commit()

    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await projects_repo.get_project(ActorScope(session, owner.actor), project_id)


@pytest.mark.asyncio
async def test_system_reads_bypass_scope_for_maintenance() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await run_completed_analysis(owner, project_id=project_id, severities=("info",))

    async with SessionLocal() as session:
        analyses = (await session.execute(as_system(select(Analysis)))).scalars().all()
        violations = (await session.execute(as_system(select(Violation)))).scalars().all()
    assert len(analyses) == 1
    assert len(violations) == 1
