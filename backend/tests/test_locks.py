"""Tests for lock stores and hold_lock."""
import asyncio
import logging

import pytest

from portal_uploads.services.provisioning.locks import (
    InMemoryLockStore,
    LockAcquisitionError,
    RedisLockStore,
    hold_lock,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def test_in_memory_lock_is_exclusive_and_owner_checked():
    store = InMemoryLockStore()
    assert await store.acquire("k", "a", 30)
    assert not await store.acquire("k", "b", 30)
    assert not await store.release("k", "b")
    assert await store.release("k", "a")
    assert await store.acquire("k", "b", 30)


async def test_in_memory_lock_expires():
    clock = FakeClock()
    store = InMemoryLockStore(clock=clock)
    assert await store.acquire("k", "a", 5)
    clock.now = 4.9
    assert not await store.acquire("k", "b", 5)
    clock.now = 5.0
    assert await store.acquire("k", "b", 5)
    # The expired owner can no longer extend or release
    assert not await store.extend("k", "a", 5)
    assert not await store.release("k", "a")


async def test_in_memory_extend():
    clock = FakeClock()
    store = InMemoryLockStore(clock=clock)
    await store.acquire("k", "a", 5)
    clock.now = 4
    assert await store.extend("k", "a", 5)
    clock.now = 8
    assert store.held("k")


async def test_hold_lock_waits_for_release():
    store = InMemoryLockStore()
    await store.acquire("lock:job", "other", 30)

    async def release_later():
        await asyncio.sleep(0.02)
        await store.release("lock:job", "other")

    releaser = asyncio.create_task(release_later())
    async with hold_lock(store, "job", ttl=30, retry_attempts=20, retry_delay=0.01) as lock:
        assert lock.acquired
        assert store.held("lock:job")
    await releaser
    assert not store.held("lock:job")


async def test_hold_lock_gives_up():
    store = InMemoryLockStore()
    await store.acquire("lock:job", "other", 30)
    with pytest.raises(LockAcquisitionError) as exc_info:
        async with hold_lock(store, "job", retry_attempts=3, retry_delay=0.001):
            pass
    assert exc_info.value.attempts == 3
    assert "after 3 attempts" in str(exc_info.value)


async def test_hold_lock_releases_on_error():
    store = InMemoryLockStore()
    with pytest.raises(RuntimeError):
        async with hold_lock(store, "job"):
            raise RuntimeError("boom")
    assert not store.held("lock:job")


class BrokenRedis:
    async def set(self, *args, **kwargs):
        raise ConnectionError("redis down")

    async def eval(self, *args):
        raise ConnectionError("redis down")


class RecordingRedis:
    def __init__(self):
        self.calls = []

    async def set(self, key, value, nx=False, px=None):
        self.calls.append(("set", key, value, nx, px))
        return True

    async def eval(self, script, numkeys, *args):
        self.calls.append(("eval", numkeys, args))
        return 1


async def test_redis_errors_mean_not_acquired(caplog):
    store = RedisLockStore(BrokenRedis())
    with caplog.at_level(logging.ERROR, logger="portal_uploads.services.provisioning.locks"):
        assert not await store.acquire("k", "a", 30)
        assert not await store.release("k", "a")
        assert not await store.extend("k", "a", 30)
    assert [r.getMessage() for r in caplog.records] == [
        "Failed to acquire lock k: redis down",
        "Failed to release lock k: redis down",
        "Failed to extend lock k: redis down",
    ]


async def test_redis_lock_uses_set_nx_px():
    redis = RecordingRedis()
    store = RedisLockStore(redis)
    assert await store.acquire("k", "owner", 30)
    assert redis.calls[0] == ("set", "k", "owner", True, 30000)
    assert await store.release("k", "owner")
    assert redis.calls[1] == ("eval", 1, ("k", "owner"))
