"""
Tests for TTLCache.
"""

import asyncio
import json

import pytest

from offsync.core.cache import DEFAULT_PERSIST_KEYS, CacheStats, TTLCache
from offsync.core.types import CacheEntry, ErrorCategory
from offsync.storage.memory import MemoryStore


class SlowStore(MemoryStore):
    """MemoryStore that yields mid-operation and tracks overlapping calls."""

    def __init__(self, delay: float = 0.01) -> None:
        super().__init__()
        self.delay = delay
        self.active: dict[str, int] = {}
        self.max_active_per_key: dict[str, int] = {}
        self.max_active = 0

    async def _slow(self, key: str) -> None:
        self.active[key] = self.active.get(key, 0) + 1
        self.max_active_per_key[key] = max(self.max_active_per_key.get(key, 0), self.active[key])
        self.max_active = max(self.max_active, sum(self.active.values()))
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active[key] -= 1

    async def get(self, key: str) -> bytes | None:
        await self._slow(key)
        return await super().get(key)

    async def set(self, key: str, value: bytes) -> None:
        await self._slow(key)
        await super().set(key, value)


@pytest.fixture
def cache(store, clock, error_log):
    return TTLCache(store, clock=clock, max_entries=3, default_ttl=300.0, error_log=error_log)


class TestCacheStats:
    """Tests for CacheStats."""

    def test_hit_rate_empty(self):
        assert CacheStats().hit_rate == 0.0

    def test_hit_rate(self):
        stats = CacheStats(hits=3, misses=1)
        assert stats.hit_rate == 0.75
        assert stats.to_dict()["hit_rate"] == 0.75


class TestTTL:
    """Expiry behavior."""

    @pytest.mark.asyncio
    async def test_get_after_put(self, cache):
        await cache.put("market_prices", {"milk": 1.2}, ttl=60)
        assert await cache.get("market_prices") == {"milk": 1.2}

    @pytest.mark.asyncio
    async def test_expired_is_absent(self, cache, clock):
        await cache.put("market_prices", [1, 2], ttl=60)
        clock.advance(60.0)
        assert await cache.get("market_prices") is None
        assert "market_prices" not in cache.keys()
        assert cache.stats().expirations == 1

    @pytest.mark.asyncio
    async def test_valid_just_before_expiry(self, cache, clock):
        await cache.put("market_prices", "v", ttl=60)
        clock.advance(59.9)
        assert await cache.get("market_prices") == "v"

    @pytest.mark.asyncio
    async def test_default_ttl(self, cache, clock):
        await cache.put("weather", "sunny")
        clock.advance(299.0)
        assert await cache.get("weather") == "sunny"
        clock.advance(2.0)
        assert await cache.get("weather") is None

    @pytest.mark.asyncio
    async def test_non_positive_ttl_ignored(self, cache):
        await cache.put("weather", "sunny", ttl=0)
        assert await cache.get("weather") is None
        assert cache.stats().sets == 0

    @pytest.mark.asyncio
    async def test_overwrite_refreshes_expiry(self, cache, clock):
        await cache.put("weather", "old", ttl=10)
        clock.advance(8.0)
        await cache.put("weather", "new", ttl=10)
        clock.advance(8.0)
        assert await cache.get("weather") == "new"

    @pytest.mark.asyncio
    async def test_contains(self, cache, clock):
        await cache.put("weather", "sunny", ttl=10)
        assert "weather" in cache
        clock.advance(10.0)
        assert "weather" not in cache

    @pytest.mark.asyncio
    async def test_purge_expired(self, cache, clock):
        await cache.put("a", 1, ttl=5)
        await cache.put("b", 2, ttl=50)
        clock.advance(10.0)
        assert cache.purge_expired() == 1
        assert cache.keys() == ["b"]

    def test_invalid_construction(self, store):
        with pytest.raises(ValueError):
            TTLCache(store, max_entries=0)
        with pytest.raises(ValueError):
            TTLCache(store, default_ttl=0)


class TestEviction:
    """Capacity bound."""

    @pytest.mark.asyncio
    async def test_oldest_evicted(self, cache):
        for key in ("k1", "k2", "k3", "k4"):
            await cache.put(key, key)

        assert len(cache) == 3
        assert cache.keys() == ["k2", "k3", "k4"]
        assert await cache.get("k1") is None
        assert cache.stats().evictions == 1

    @pytest.mark.asyncio
    async def test_oldest_by_stored_at(self, cache, clock):
        for key in ("k1", "k2", "k3"):
            await cache.put(key, key)
            clock.advance(1.0)
        await cache.put("k1", "rewritten")
        await cache.put("k4", "k4")

        assert set(cache.keys()) == {"k1", "k3", "k4"}

    @pytest.mark.asyncio
    async def test_expired_purged_before_eviction(self, cache, clock):
        await cache.put("short", 1, ttl=5)
        await cache.put("k2", 2)
        await cache.put("k3", 3)
        clock.advance(6.0)
        await cache.put("k4", 4)

        assert set(cache.keys()) == {"k2", "k3", "k4"}
        assert cache.stats().evictions == 0
        assert cache.stats().expirations == 1


class TestPersistence:
    """Persistent tier for important keys."""

    def test_is_persistent(self, cache):
        assert DEFAULT_PERSIST_KEYS == ("predictions", "inventory", "user_subscription", "market_data")
        assert cache.is_persistent("inventory")
        assert cache.is_persistent("predictions_7d")
        assert not cache.is_persistent("weather")

    @pytest.mark.asyncio
    async def test_important_key_written_to_store(self, cache, store, clock):
        await cache.put("inventory", {"milk": 4}, ttl=60)

        raw = await store.get("cache_inventory")
        entry = CacheEntry.model_validate_json(raw)
        assert entry.value == {"milk": 4}
        assert entry.stored_at == clock.now()
        assert entry.expires_at == clock.now() + 60

    @pytest.mark.asyncio
    async def test_other_keys_memory_only(self, cache, store):
        await cache.put("weather", "sunny")
        assert store.keys() == []

    @pytest.mark.asyncio
    async def test_reload_from_store(self, store, clock):
        first = TTLCache(store, clock=clock)
        await first.put("predictions", [0.4, 0.6], ttl=60)

        second = TTLCache(store, clock=clock)
        assert await second.get("predictions") == [0.4, 0.6]
        assert "predictions" in second

    @pytest.mark.asyncio
    async def test_expired_persisted_entry_removed(self, store, clock):
        first = TTLCache(store, clock=clock)
        await first.put("inventory", "stale", ttl=5)
        clock.advance(10.0)

        second = TTLCache(store, clock=clock)
        assert await second.get("inventory") is None
        assert await store.get("cache_inventory") is None

    @pytest.mark.asyncio
    async def test_eviction_keeps_persisted_copy(self, store, clock):
        cache = TTLCache(store, clock=clock, max_entries=1)
        await cache.put("inventory", "counted")
        await cache.put("weather", "sunny")

        assert "inventory" not in cache.keys()
        assert await cache.get("inventory") == "counted"

    @pytest.mark.asyncio
    async def test_reloaded_entry_not_evicted_at_once(self, flaky_store, clock):
        first = TTLCache(flaky_store, clock=clock)
        await first.put("inventory", "counted", ttl=600)

        clock.advance(10.0)
        second = TTLCache(flaky_store, clock=clock, max_entries=2)
        await second.put("weather", "sunny")
        await second.put("news", "quiet")

        assert await second.get("inventory") == "counted"
        assert "inventory" in second.keys()
        assert "weather" not in second.keys()

        flaky_store.fail_get = True
        assert await second.get("inventory") == "counted"
        assert second.stats().errors == 0

    @pytest.mark.asyncio
    async def test_invalidate_removes_persisted(self, cache, store):
        await cache.put("inventory", 1)
        await cache.invalidate("inventory")
        assert await cache.get("inventory") is None
        assert await store.get("cache_inventory") is None

    @pytest.mark.asyncio
    async def test_clear_keeps_persisted(self, cache, store):
        await cache.put("inventory", 1)
        await cache.put("weather", 2)
        await cache.clear()

        assert len(cache) == 0
        assert await cache.get("weather") is None
        assert await cache.get("inventory") == 1


class TestStoreFailures:
    """Store failures never reach the caller."""

    @pytest.mark.asyncio
    async def test_persist_failure_absorbed(self, flaky_store, clock, error_log):
        cache = TTLCache(flaky_store, clock=clock, error_log=error_log)
        flaky_store.fail_set = True

        await cache.put("inventory", {"milk": 4})

        assert await cache.get("inventory") == {"milk": 4}
        assert cache.stats().errors == 1
        records = error_log.records()
        assert records[-1].category == ErrorCategory.STORAGE
        assert records[-1].context == "cache_persist"

    @pytest.mark.asyncio
    async def test_load_failure_is_miss(self, flaky_store, clock):
        cache = TTLCache(flaky_store, clock=clock)
        flaky_store.fail_get = True

        assert await cache.get("inventory") is None
        assert cache.stats().misses == 1
        assert cache.stats().errors == 1

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_miss(self, store, clock):
        await store.set("cache_inventory", b"not json")
        cache = TTLCache(store, clock=clock)
        assert await cache.get("inventory") is None

    @pytest.mark.asyncio
    async def test_delete_failure_absorbed(self, flaky_store, clock):
        cache = TTLCache(flaky_store, clock=clock)
        await cache.put("inventory", 1)
        flaky_store.fail_delete = True
        await cache.invalidate("inventory")
        assert "inventory" not in cache


class TestStats:
    """Hit/miss accounting."""

    @pytest.mark.asyncio
    async def test_hits_and_misses(self, cache, clock):
        await cache.put("weather", "sunny")
        await cache.get("weather")
        await cache.get("missing")

        stats = cache.stats()
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.sets == 1
        assert stats.last_hit == clock.now()
        assert stats.last_miss == clock.now()


class TestConcurrency:
    """Concurrent callers against a store that yields mid-operation."""

    @pytest.mark.asyncio
    async def test_same_key_writes_serialized(self, clock):
        store = SlowStore()
        cache = TTLCache(store, clock=clock, max_entries=1)

        calls = []
        for i in range(6):
            calls.append(cache.put("inventory", i))
            calls.append(cache.put(f"market_data_{i}", i))
        await asyncio.gather(*calls)

        assert store.max_active_per_key["cache_inventory"] == 1
        stored = json.loads(await MemoryStore.get(store, "cache_inventory"))
        assert stored["value"] == 5
        assert await cache.get("inventory") == 5

    @pytest.mark.asyncio
    async def test_concurrent_put_and_get_same_key(self, clock):
        store = SlowStore()
        cache = TTLCache(store, clock=clock, max_entries=1)
        await cache.put("predictions", "old")
        await cache.put("weather", "sunny")

        results = await asyncio.gather(
            cache.get("predictions"),
            cache.put("predictions", "new"),
            cache.get("predictions"),
        )

        assert results[0] == "old"
        assert results[2] == "new"
        assert store.max_active_per_key["cache_predictions"] == 1

    @pytest.mark.asyncio
    async def test_different_keys_overlap(self, clock):
        store = SlowStore()
        cache = TTLCache(store, clock=clock)

        await asyncio.gather(*(cache.put(f"inventory_{i}", i) for i in range(5)))

        assert store.max_active > 1
        for i in range(5):
            assert await cache.get(f"inventory_{i}") == i

    @pytest.mark.asyncio
    async def test_locks_released_after_use(self, clock):
        cache = TTLCache(SlowStore(), clock=clock, max_entries=1)

        await asyncio.gather(*(cache.put("inventory", i) for i in range(4)), cache.put("weather", 1))

        assert cache._locks == {}
