from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from redis.asyncio import Redis

from agentforge.core.config import get_settings


logger = logging.getLogger(__name__)

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_local_locks: dict[str, asyncio.Lock] = {}
_local_lock_owners: dict[str, str] = {}


async def get_coordination_redis() -> Redis | None:
    # Reuse one Redis client per event loop; None means single-process coordination only.
    settings = get_settings()
    if not settings.redis_url:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    try:
        _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        _redis_loop = current_loop
    except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
        logger.warning("coordination_redis_unavailable", exc_info=exc)
        _redis_pool = None
        return None
    return _redis_pool


@dataclass(slots=True)
class HeldLock:
    key: str
    token: str
    redis: Any | None
    local: bool


async def acquire_lock(key: str, *, ttl_s: int) -> HeldLock | None:
    # SET NX EX across processes when Redis is configured; otherwise an in-process lock per key.
    token = uuid4().hex
    redis = await get_coordination_redis()
    if redis is not None:
        acquired = await redis.set(key, token, nx=True, ex=max(5, int(ttl_s)))
        if not acquired:
            return None
        return HeldLock(key=key, token=token, redis=redis, local=False)

    lock = _local_locks.setdefault(key, asyncio.Lock())
    # Never wait on the local lock: a second caller is told the work is already running.
    if lock.locked():
        return None
    await lock.acquire()
    _local_lock_owners[key] = token
    return HeldLock(key=key, token=token, redis=None, local=True)


async def release_lock(lock: HeldLock) -> None:
    # Release only if this holder still owns the token to avoid clobbering a newer owner.
    if lock.local:
        local = _local_locks.get(lock.key)
        if local is not None and local.locked() and _local_lock_owners.get(lock.key) == lock.token:
            _local_lock_owners.pop(lock.key, None)
            local.release()
        return
    if lock.redis is None:
        return
    current = await lock.redis.get(lock.key)
    value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
    if value == lock.token:
        await lock.redis.delete(lock.key)
