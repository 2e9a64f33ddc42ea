"""Short-lived result cache keyed by a hash of operation parameters."""
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def idempotency_key(operation: str, params: dict[str, Any]) -> str:
    """Deterministic key: ``idempotency:<op>:<first 16 hex of sha256>``.

    Parameters are serialized with sorted keys so argument order never
    changes the key.
    """
    param_string = json.dumps(params, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(f"{operation}:{param_string}".encode("utf-8")).hexdigest()
    return f"idempotency:{operation}:{digest[:16]}"


def storage_account_key(user_id: str, provider: str, provider_account_id: str) -> str:
    return idempotency_key("create-storage-account", {
        "userId": user_id,
        "provider": provider,
        "providerAccountId": provider_account_id,
    })


def ensure_user_key(user_id: str) -> str:
    return idempotency_key("ensure-user-storage-accounts", {"userId": user_id})


class IdempotencyStore(ABC):
    """JSON-serializable result records with a TTL."""

    @abstractmethod
    async def get(self, key: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def put(self, key: str, value: dict, ttl: float) -> None:
        ...

    @abstractmethod
    async def invalidate(self, key: str) -> None:
        ...


class InMemoryIdempotencyStore(IdempotencyStore):
    """Process-local records, expired lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._records: dict[str, tuple[dict, float]] = {}

    async def get(self, key: str) -> Optional[dict]:
        entry = self._records.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._records[key]
            return None
        return dict(value)

    async def put(self, key: str, value: dict, ttl: float) -> None:
        self._records[key] = (dict(value), self._clock() + ttl)

    async def invalidate(self, key: str) -> None:
        self._records.pop(key, None)


class RedisIdempotencyStore(IdempotencyStore):
    """Records stored as JSON strings with SET EX."""

    def __init__(self, redis_client):
        self.redis_client = redis_client

    async def get(self, key: str) -> Optional[dict]:
        raw = await self.redis_client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def put(self, key: str, value: dict, ttl: float) -> None:
        await self.redis_client.set(key, json.dumps(value), ex=max(1, int(ttl)))

    async def invalidate(self, key: str) -> None:
        await self.redis_client.delete(key)
