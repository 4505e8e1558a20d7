from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from agentforge.apps.api.response import get_request_id
from agentforge.persistence.db import get_session
from agentforge.persistence.guards import Actor
from agentforge.providers.vector.base import VectorIndex
from agentforge.providers.vector.factory import get_vector_index


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_actor(
    request: Request,
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
) -> Actor:
    # Authentication happens upstream; the gateway forwards the verified user id.
    actor_id = (x_actor_id or "").strip()
    if not actor_id:
        raise HTTPException(
            status_code=401,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing X-Actor-Id header"},
        )
    return Actor(user_id=actor_id, request_id=get_request_id(request))


def get_index() -> VectorIndex:
    return get_vector_index()
