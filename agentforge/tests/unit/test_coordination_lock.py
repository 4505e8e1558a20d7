from __future__ import annotations

import pytest

from agentforge.services import coordination as coordination_module
from agentforge.services.coordination import acquire_lock, release_lock


class _FakeRedis:
    def __init__(self) -> None:
        self._values: dict[str, tuple[str, int | None]] = {}
        self.now = 0

    def advance(self, seconds: int) -> None:
        self.now += int(seconds)

    def _expired(self, key: str) -> bool:
        item = self._values.get(key)
        if item is None:
            return True
        _value, expiry = item
        return expiry is not None and self.now >= expiry

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):  # noqa: ANN001
        if nx and not self._expired(key):
            return False
        expiry = self.now + int(ex) if ex is not None else None
        self._values[key] = (str(value), expiry)
        return True

    async def get(self, key: str):  # noqa: ANN001
        if self._expired(key):
            self._values.pop(key, None)
            return None
        return self._values[key][0]

    async def delete(self, key: str) -> int:
        return 1 if self._values.pop(key, None) is not None else 0


@pytest.mark.asyncio
async def test_redis_lock_is_exclusive_until_released(monkeypatch) -> None:
    fake = _FakeRedis()

    async def _redis():
        return fake

    monkeypatch.setattr(coordination_module, "get_coordination_redis", _redis)

    first = await acquire_lock("lock:test", ttl_s=30)
    assert first is not None and not first.local
    assert await acquire_lock("lock:test", ttl_s=30) is None

    await release_lock(first)
    second = await acquire_lock("lock:test", ttl_s=30)
    assert second is not None
    await release_lock(second)


@pytest.mark.asyncio
async def test_redis_lock_expires_and_stale_holder_cannot_release(monkeypatch) -> None:
    fake = _FakeRedis()

    async def _redis():
        return fake

    monkeypatch.setattr(coordination_module, "get_coordination_redis", _redis)

    stale = await acquire_lock("lock:ttl", ttl_s=10)
    assert stale is not None
    fake.advance(11)
    fresh = await acquire_lock("lock:ttl", ttl_s=10)
    assert fresh is not None

    # The expired holder must not delete the new owner's key.
    await release_lock(stale)
    assert await acquire_lock("lock:ttl", ttl_s=10) is None
    await release_lock(fresh)


@pytest.mark.asyncio
async def test_local_lock_never_waits(monkeypatch) -> None:
    async def _no_redis():
        return None

    monkeypatch.setattr(coordination_module, "get_coordination_redis", _no_redis)

    held = await acquire_lock("lock:local", ttl_s=30)
    assert held is not None and held.local
    assert await acquire_lock("lock:local", ttl_s=30) is None

    await release_lock(held)
    again = await acquire_lock("lock:local", ttl_s=30)
    assert again is not None
    await release_lock(again)
