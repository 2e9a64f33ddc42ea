"""Tests for idempotency keys and stores."""
import json

from portal_uploads.services.provisioning.idempotency import (
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
    ensure_user_key,
    idempotency_key,
    storage_account_key,
)


def test_key_is_deterministic_and_order_independent():
    a = idempotency_key("op", {"b": 2, "a": 1})
    b = idempotency_key("op", {"a": 1, "b": 2})
    assert a == b
    assert a.startswith("idempotency:op:")
    assert len(a.rsplit(":", 1)[1]) == 16


def test_keys_differ_per_operation_and_params():
    assert idempotency_key("op", {"a": 1}) != idempotency_key("other", {"a": 1})
    assert storage_account_key("u", "google_drive", "1") != storage_account_key("u", "google_drive", "2")
    assert ensure_user_key("u").startswith("idempotency:ensure-user-storage-accounts:")


async def test_in_memory_store_expires_and_invalidates():
    clock_value = [0.0]
    store = InMemoryIdempotencyStore(clock=lambda: clock_value[0])
    await store.put("k", {"x": 1}, ttl=10)
    assert await store.get("k") == {"x": 1}
    clock_value[0] = 10
    assert await store.get("k") is None

    await store.put("k", {"x": 2}, ttl=10)
    await store.invalidate("k")
    assert await store.get("k") is None


async def test_in_memory_store_returns_copies():
    store = InMemoryIdempotencyStore()
    await store.put("k", {"x": 1}, ttl=10)
    (await store.get("k"))["x"] = 99
    assert await store.get("k") == {"x": 1}


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.expiry = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, key):
        self.data.pop(key, None)


async def test_redis_store_serializes_json_with_ttl():
    redis = FakeRedis()
    store = RedisIdempotencyStore(redis)
    await store.put("k", {"operation": "CREATED"}, ttl=300)
    assert json.loads(redis.data["k"]) == {"operation": "CREATED"}
    assert redis.expiry["k"] == 300
    assert await store.get("k") == {"operation": "CREATED"}
    await store.invalidate("k")
    assert await store.get("k") is None
