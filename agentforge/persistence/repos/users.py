from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agentforge.core.errors import AccessDeniedError, NotFoundError
from agentforge.domain.enums import USER_ROLES, require_member
from agentforge.domain.models import User
from agentforge.persistence.guards import ActorScope
from agentforge.persistence.integrity import classify_integrity_error


async def create_user(
    session: AsyncSession,
    *,
    username: str,
    role: str = "contributor",
    email: str | None = None,
    user_id: str | None = None,
) -> User:
    # Provisioning runs outside any actor scope (seed scripts, identity sync).
    require_member(role, USER_ROLES, field="role")
    user = User(username=username, role=role, email=email)
    if user_id is not None:
        user.id = user_id
    session.add(user)
    try:
        await session.flush()
    except IntegrityError as exc:
        raise classify_integrity_error(exc, resource_type="user") from exc
    return user


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def _require_admin_target(scope: ActorScope, user_id: str) -> User:
    # Only administrators change roles or activation; others see the target as missing.
    if not await scope.is_admin():
        raise AccessDeniedError("user", user_id)
    user = await get_user(scope.session, user_id)
    if user is None:
        raise NotFoundError("user", user_id)
    return user


async def set_user_role(scope: ActorScope, *, user_id: str, role: str) -> User:
    require_member(role, USER_ROLES, field="role")
    user = await _require_admin_target(scope, user_id)
    user.role = role
    await scope.session.flush()
    return user


async def deactivate_user(scope: ActorScope, *, user_id: str) -> User:
    # Deactivation takes effect on the next statement because predicates re-read is_active.
    user = await _require_admin_target(scope, user_id)
    user.is_active = False
    await scope.session.flush()
    return user
