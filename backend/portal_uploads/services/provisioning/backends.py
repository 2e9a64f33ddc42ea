"""Build lock and idempotency stores from settings."""
import logging

import redis.asyncio as redis

from portal_uploads.config import settings
from portal_uploads.services.provisioning.locks import LockStore, InMemoryLockStore, RedisLockStore
from portal_uploads.services.provisioning.idempotency import (
    IdempotencyStore, InMemoryIdempotencyStore, RedisIdempotencyStore,
)

logger = logging.getLogger(__name__)

_redis_client = None


def get_redis_client():
    """Lazily create the shared asyncio Redis client."""
    global _redis_client
    if _redis_client is None:
        if not settings.REDIS_URL:
            raise ValueError("REDIS_URL must be set when LOCK_BACKEND=redis")
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        logger.info("Redis client created for provisioning locks")
    return _redis_client


def build_lock_store(backend: str | None = None) -> LockStore:
    backend = (backend or settings.LOCK_BACKEND).lower()
    if backend == "redis":
        return RedisLockStore(get_redis_client())
    if backend == "memory":
        return InMemoryLockStore()
    raise ValueError(f"Unknown LOCK_BACKEND: {backend}")


def build_idempotency_store(backend: str | None = None) -> IdempotencyStore:
    backend = (backend or settings.LOCK_BACKEND).lower()
    if backend == "redis":
        return RedisIdempotencyStore(get_redis_client())
    if backend == "memory":
        return InMemoryIdempotencyStore()
    raise ValueError(f"Unknown LOCK_BACKEND: {backend}")


async def close_redis_client() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
