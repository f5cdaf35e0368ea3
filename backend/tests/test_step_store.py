import pytest

from receipt_scanner.services.step_store import InMemoryStepStore, RedisStepStore, step_key


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.expiry = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiry[key] = ex


def test_step_key_is_scoped_by_job_and_step():
    assert step_key("msg-1", "infer-receipt") == "receipt-steps:msg-1:infer-receipt"
    assert step_key("msg-1", "infer-receipt") != step_key("msg-2", "infer-receipt")


@pytest.mark.asyncio
async def test_in_memory_store_round_trips_json():
    store = InMemoryStepStore()
    assert await store.get("k") is None
    await store.set("k", {"file_id": "file-1"})
    assert await store.get("k") == {"file_id": "file-1"}
    assert "k" in store


@pytest.mark.asyncio
async def test_redis_store_sets_ttl_and_ignores_garbage():
    redis = FakeRedis()
    store = RedisStepStore(redis, ttl_seconds=60)

    await store.set("k", {"text": "{}"})
    assert redis.expiry["k"] == 60
    assert await store.get("k") == {"text": "{}"}

    redis.values["bad"] = "not json"
    assert await store.get("bad") is None
