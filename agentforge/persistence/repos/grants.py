from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from agentforge.core.errors import NotFoundError
from agentforge.domain.enums import GRANT_PERMISSIONS, RESOURCE_TYPES, require_member
from agentforge.domain.models import AccessGrant, Analysis, Base, Embedding, FileAnalysis, Violation
from agentforge.persistence.guards import ActorScope
from agentforge.persistence.integrity import classify_integrity_error
from agentforge.persistence.repos.audit import stage_scope_event
from agentforge.persistence.repos.users import get_user


_CHILD_MODELS: dict[str, type[Base]] = {
    "analysis": Analysis,
    "file_analysis": FileAnalysis,
    "violation": Violation,
    "embedding": Embedding,
}


async def _require_manageable(scope: ActorScope, resource_type: str, resource_id: str) -> str:
    # Grants on a row are managed by whoever manages the owning project; returns that project id.
    if resource_type == "project":
        await scope.require_project(resource_id, manage=True)
        return resource_id
    model = _CHILD_MODELS[resource_type]
    row = await scope.get(model, resource_id)
    if row is None:
        raise NotFoundError(resource_type, resource_id)
    try:
        await scope.require_project(row.project_id, manage=True)
    except NotFoundError as exc:
        raise NotFoundError(resource_type, resource_id) from exc
    return row.project_id


def _stage_grant_event(scope: ActorScope, event_type: str, grant: AccessGrant, project_id: str) -> None:
    stage_scope_event(
        scope,
        event_type,
        resource_type=grant.resource_type,
        resource_id=grant.resource_id,
        project_id=project_id,
        metadata={"grant_id": grant.id, "grantee": grant.user_id, "permission": grant.permission},
    )


async def grant_access(
    scope: ActorScope,
    *,
    user_id: str,
    resource_type: str,
    resource_id: str,
    permission: str = "read",
    expires_at: datetime | None = None,
) -> AccessGrant:
    require_member(resource_type, RESOURCE_TYPES, field="resource_type")
    require_member(permission, GRANT_PERMISSIONS, field="permission")
    project_id = await _require_manageable(scope, resource_type, resource_id)
    if await get_user(scope.session, user_id) is None:
        raise NotFoundError("user", user_id)

    result = await scope.session.execute(
        select(AccessGrant).where(
            AccessGrant.user_id == user_id,
            AccessGrant.resource_type == resource_type,
            AccessGrant.resource_id == resource_id,
            AccessGrant.permission == permission,
        )
    )
    grant = result.scalar_one_or_none()
    if grant is not None:
        # Re-granting refreshes the expiry instead of failing on the unique scope.
        grant.expires_at = expires_at
        await scope.session.flush()
        _stage_grant_event(scope, "access.granted", grant, project_id)
        return grant

    grant = AccessGrant(
        user_id=user_id,
        resource_type=resource_type,
        resource_id=resource_id,
        permission=permission,
        granted_by=scope.user_id,
        expires_at=expires_at,
    )
    scope.session.add(grant)
    try:
        await scope.session.flush()
    except IntegrityError as exc:
        raise classify_integrity_error(exc, resource_type="access_grant") from exc
    _stage_grant_event(scope, "access.granted", grant, project_id)
    return grant


async def revoke_access(scope: ActorScope, *, grant_id: str) -> None:
    result = await scope.session.execute(select(AccessGrant).where(AccessGrant.id == grant_id))
    grant = result.scalar_one_or_none()
    if grant is None:
        raise NotFoundError("access_grant", grant_id)
    try:
        project_id = await _require_manageable(scope, grant.resource_type, grant.resource_id)
    except NotFoundError as exc:
        raise NotFoundError("access_grant", grant_id) from exc
    _stage_grant_event(scope, "access.revoked", grant, project_id)
    await scope.session.delete(grant)
    await scope.session.flush()


async def list_grants(scope: ActorScope, *, resource_type: str, resource_id: str) -> list[AccessGrant]:
    require_member(resource_type, RESOURCE_TYPES, field="resource_type")
    await _require_manageable(scope, resource_type, resource_id)
    result = await scope.session.execute(
        select(AccessGrant)
        .where(AccessGrant.resource_type == resource_type, AccessGrant.resource_id == resource_id)
        .order_by(AccessGrant.created_at, AccessGrant.id)
    )
    return list(result.scalars().all())


async def delete_grants_for(scope: ActorScope, *, resource_type: str, resource_ids: list[str]) -> int:
    # Grants have no FK to their resource; purge them alongside the rows they point at.
    if not resource_ids:
        return 0
    result = await scope.session.execute(
        delete(AccessGrant).where(
            AccessGrant.resource_type == resource_type,
            AccessGrant.resource_id.in_(resource_ids),
        )
    )
    return int(result.rowcount or 0)
