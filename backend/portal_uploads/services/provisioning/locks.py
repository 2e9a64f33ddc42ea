"""Distributed locking for storage-account provisioning.

Two backends share one interface: an in-process store for a single worker
(and tests) and a Redis store for multi-process deployments. Callers use
``hold_lock`` which adds bounded retry and guaranteed release.
"""
import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock:"


class LockAcquisitionError(Exception):
    """Raised when a lock could not be acquired after the allowed attempts."""

    def __init__(self, key: str, attempts: int):
        self.key = key
        self.attempts = attempts
        super().__init__(f"Failed to acquire distributed lock '{key}' after {attempts} attempts")


class LockStore(ABC):
    """Mutual-exclusion store keyed by string, with per-owner TTL leases."""

    @abstractmethod
    async def acquire(self, key: str, owner: str, ttl: float) -> bool:
        """Take the lease if nobody holds it. Never blocks."""

    @abstractmethod
    async def release(self, key: str, owner: str) -> bool:
        """Drop the lease only if ``owner`` still holds it."""

    @abstractmethod
    async def extend(self, key: str, owner: str, ttl: float) -> bool:
        """Reset the TTL only if ``owner`` still holds it."""


class InMemoryLockStore(LockStore):
    """Process-local lock table. Safe across tasks of one event loop only."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._locks: dict[str, tuple[str, float]] = {}

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, (_, expires_at) in self._locks.items() if expires_at <= now]
        for k in expired:
            del self._locks[k]

    async def acquire(self, key: str, owner: str, ttl: float) -> bool:
        now = self._clock()
        self._purge_expired(now)
        if key in self._locks:
            return False
        self._locks[key] = (owner, now + ttl)
        return True

    async def release(self, key: str, owner: str) -> bool:
        entry = self._locks.get(key)
        if entry and entry[0] == owner:
            del self._locks[key]
            return True
        return False

    async def extend(self, key: str, owner: str, ttl: float) -> bool:
        now = self._clock()
        entry = self._locks.get(key)
        if not entry or entry[0] != owner or entry[1] <= now:
            return False
        self._locks[key] = (owner, now + ttl)
        return True

    def held(self, key: str) -> bool:
        entry = self._locks.get(key)
        return entry is not None and entry[1] > self._clock()


_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class RedisLockStore(LockStore):
    """Redis lock leases: SET NX PX to acquire, Lua compare-and-delete to release."""

    def __init__(self, redis_client):
        self.redis_client = redis_client

    async def acquire(self, key: str, owner: str, ttl: float) -> bool:
        try:
            result = await self.redis_client.set(key, owner, nx=True, px=int(ttl * 1000))
            return bool(result)
        except Exception as e:
            logger.error("Failed to acquire lock %s: %s", key, e)
            return False

    async def release(self, key: str, owner: str) -> bool:
        try:
            result = await self.redis_client.eval(_RELEASE_SCRIPT, 1, key, owner)
            return result == 1
        except Exception as e:
            logger.error("Failed to release lock %s: %s", key, e)
            return False

    async def extend(self, key: str, owner: str, ttl: float) -> bool:
        try:
            result = await self.redis_client.eval(_EXTEND_SCRIPT, 1, key, owner, int(ttl * 1000))
            return result == 1
        except Exception as e:
            logger.error("Failed to extend lock %s: %s", key, e)
            return False


class DistributedLock:
    """A single lease on ``key`` owned by a random token."""

    def __init__(self, store: LockStore, key: str, ttl: float = 30.0):
        self.store = store
        self.key = f"{LOCK_PREFIX}{key}"
        self.ttl = ttl
        self.owner = f"{uuid.uuid4().hex}"
        self.acquired = False

    async def acquire(self) -> bool:
        self.acquired = await self.store.acquire(self.key, self.owner, self.ttl)
        if self.acquired:
            logger.debug("Acquired lock %s", self.key)
        else:
            logger.debug("Lock %s already held", self.key)
        return self.acquired

    async def release(self) -> bool:
        if not self.acquired:
            return True
        released = await self.store.release(self.key, self.owner)
        if released:
            logger.debug("Released lock %s", self.key)
        else:
            logger.warning("Failed to release lock %s (not our lock or expired)", self.key)
        self.acquired = False
        return released

    async def extend(self, ttl: Optional[float] = None) -> bool:
        if not self.acquired:
            return False
        return await self.store.extend(self.key, self.owner, ttl or self.ttl)


@asynccontextmanager
async def hold_lock(
    store: LockStore,
    key: str,
    ttl: float = 30.0,
    retry_attempts: int = 3,
    retry_delay: float = 1.0,
) -> AsyncIterator[DistributedLock]:
    """Acquire ``key`` with bounded retry, yield the lock, always release.

    Waits ``retry_delay * attempt`` seconds between attempts. Raises
    LockAcquisitionError once ``retry_attempts`` attempts have failed.
    """
    lock = DistributedLock(store, key, ttl)
    attempt = 0
    while True:
        if await lock.acquire():
            break
        attempt += 1
        if attempt >= retry_attempts:
            raise LockAcquisitionError(key, retry_attempts)
        delay = retry_delay * attempt
        logger.info("Lock %s busy, attempt %d/%d, retrying in %.2fs", key, attempt, retry_attempts, delay)
        await asyncio.sleep(delay)

    try:
        yield lock
    finally:
        await lock.release()
