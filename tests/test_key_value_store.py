"""
Tests for the key-value store implementations
"""
import pytest

from app.core.key_value_store import (
    InMemoryKeyValueStore,
    RedisKeyValueStore,
    get_key_value_store,
    set_key_value_store,
)


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestInMemoryKeyValueStore:

    @pytest.fixture
    def clock(self) -> ManualClock:
        return ManualClock()

    @pytest.fixture
    def store(self, clock) -> InMemoryKeyValueStore:
        return InMemoryKeyValueStore(clock=clock)

    @pytest.mark.unit
    async def test_set_get_json_values(self, store):
        await store.set("k", {"status": "claimed", "n": 1})
        assert await store.get("k") == {"status": "claimed", "n": 1}
        assert await store.get("missing") is None

    @pytest.mark.unit
    async def test_add_is_set_if_absent(self, store):
        assert await store.add("k", "first") is True
        assert await store.add("k", "second") is False
        assert await store.get("k") == "first"

    @pytest.mark.unit
    async def test_ttl_expiry(self, store, clock):
        await store.set("k", "v", ttl=10)
        clock.now = 9.9
        assert await store.get("k") == "v"
        clock.now = 10
        assert await store.get("k") is None
        # מפתח שפג מתפנה ל-add חדש
        assert await store.add("k", "again", ttl=10) is True

    @pytest.mark.unit
    async def test_incr_sets_ttl_only_on_create(self, store, clock):
        assert await store.incr("window", ttl=60) == 1
        clock.now = 30
        assert await store.incr("window", ttl=60) == 2
        clock.now = 60
        # החלון לא הוארך ע"י ה-incr השני
        assert await store.incr("window", ttl=60) == 1

    @pytest.mark.unit
    async def test_delete_and_keys(self, store):
        await store.set("dlq:fallback:1", {"a": 1})
        await store.set("dlq:fallback:2", {"a": 2})
        await store.set("circuit:x", {})

        assert sorted(await store.keys("dlq:fallback:")) == ["dlq:fallback:1", "dlq:fallback:2"]
        assert await store.delete("dlq:fallback:1") is True
        assert await store.delete("dlq:fallback:1") is False
        assert await store.keys("dlq:fallback:") == ["dlq:fallback:2"]

    @pytest.mark.unit
    async def test_clear(self, store):
        await store.set("a", 1)
        store.clear()
        assert await store.get("a") is None


class TestRedisKeyValueStore:
    """מימוש Redis מול FakeRedis - namespace, NX ו-TTL"""

    @pytest.fixture
    def store(self, fake_redis) -> RedisKeyValueStore:
        async def factory():
            return fake_redis
        return RedisKeyValueStore(factory, namespace="wch")

    @pytest.mark.unit
    async def test_keys_are_namespaced(self, store, fake_redis):
        await store.set("circuit:whatsapp_api", {"state": "open"}, ttl=30)
        assert "wch:circuit:whatsapp_api" in fake_redis._store
        assert fake_redis.ttl_of("wch:circuit:whatsapp_api") == 30
        assert await store.get("circuit:whatsapp_api") == {"state": "open"}

    @pytest.mark.unit
    async def test_add_uses_nx(self, store):
        assert await store.add("idem:webhook:k", {"status": "claimed"}, ttl=60) is True
        assert await store.add("idem:webhook:k", {"status": "claimed"}, ttl=60) is False

    @pytest.mark.unit
    async def test_incr_expires_on_first_increment(self, store, fake_redis):
        assert await store.incr("rate:1", ttl=60) == 1
        assert await store.incr("rate:1", ttl=60) == 2
        assert fake_redis.ttl_of("wch:rate:1") == 60

    @pytest.mark.unit
    async def test_delete_and_keys_strip_namespace(self, store):
        await store.set("dlq:fallback:a", 1)
        await store.set("dlq:fallback:b", 2)
        assert sorted(await store.keys("dlq:fallback:")) == ["dlq:fallback:a", "dlq:fallback:b"]
        assert await store.delete("dlq:fallback:a") is True
        assert await store.delete("dlq:fallback:a") is False


class TestDefaultStore:

    @pytest.mark.unit
    def test_set_key_value_store_overrides_default(self, kv_store):
        assert get_key_value_store() is kv_store
        replacement = InMemoryKeyValueStore()
        set_key_value_store(replacement)
        assert get_key_value_store() is replacement
