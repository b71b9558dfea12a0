"""Unit tests for the two-level search cache."""

import pytest

from clipscout.cache.cache_key import CacheKey
from clipscout.cache.memory_cache import BoundedMemoryCache
from clipscout.cache.search_cache import SearchCache

PAYLOAD = [{"id": "v1", "title": "cats"}, {"id": "v2", "title": "more cats"}]


class TestGetAndSet:
    @pytest.mark.asyncio
    async def test_get_returns_what_was_set(self, cache):
        key = CacheKey.of("tiktok", "cats", "7days")

        await cache.set(key, PAYLOAD, ttl_seconds=60)

        assert await cache.get(key) == PAYLOAD

    @pytest.mark.asyncio
    async def test_get_returns_none_after_ttl(self, cache, clock):
        key = CacheKey.of("tiktok", "cats", "7days")
        await cache.set(key, PAYLOAD, ttl_seconds=60)

        clock.advance(61)

        assert await cache.get(key) is None

    @pytest.mark.asyncio
    async def test_l2_entry_is_shared_between_processes(self, cache, store, keys, clock):
        """A second process with an empty L1 reads the entry from the store."""
        key = CacheKey.of("youtube", "lofi")
        await cache.set(key, PAYLOAD)

        other_process = SearchCache(
            store,
            keys,
            BoundedMemoryCache(max_entries=10, default_ttl_seconds=60, clock=clock),
            default_ttl_seconds=43200,
            clock=clock,
        )

        assert await other_process.get(key) == PAYLOAD
        assert str(key) in other_process.l1

    @pytest.mark.asyncio
    async def test_set_fully_replaces_entry(self, cache, clock):
        key = CacheKey.of("tiktok", "cats")
        await cache.set(key, PAYLOAD)
        await cache.get(key)
        cache.l1.clear()
        await cache.get(key)

        clock.advance(10)
        await cache.set(key, [{"id": "v9"}])

        entry = await cache.get_entry(key)
        assert entry.payload == [{"id": "v9"}]
        assert entry.access_count == 0
        assert entry.created_at.timestamp() == pytest.approx(clock.now)

    @pytest.mark.asyncio
    async def test_l2_hit_counts_access(self, cache, clock):
        key = CacheKey.of("tiktok", "cats")
        await cache.set(key, PAYLOAD)
        cache.l1.clear()

        clock.advance(5)
        await cache.get(key)

        entry = await cache.get_entry(key)
        assert entry.access_count == 1
        assert entry.last_accessed_at.timestamp() == pytest.approx(clock.now)

    @pytest.mark.asyncio
    async def test_store_expires_entry_without_reads(self, cache, store, keys, clock):
        key = CacheKey.of("tiktok", "cats")
        await cache.set(key, PAYLOAD, ttl_seconds=30)

        clock.advance(31)
        store.sweep_expired()

        assert not await store.exists(keys.cache_entry(str(key)))


class TestInvalidate:
    @pytest.mark.asyncio
    async def test_invalidate_removes_both_tiers(self, cache, store, keys):
        key = CacheKey.of("douyin", "coffee")
        await cache.set(key, PAYLOAD)

        await cache.invalidate(key)

        assert str(key) not in cache.l1
        assert not await store.exists(keys.cache_entry(str(key)))
        assert await cache.get(key) is None

    @pytest.mark.asyncio
    async def test_invalidate_twice_is_same_as_once(self, cache):
        key = CacheKey.of("douyin", "coffee")
        await cache.set(key, PAYLOAD)

        await cache.invalidate(key)
        await cache.invalidate(key)

        assert await cache.get(key) is None

    @pytest.mark.asyncio
    async def test_invalidate_missing_key_is_noop(self, cache):
        await cache.invalidate(CacheKey.of("douyin", "never cached"))


class TestTopByUsage:
    @pytest.mark.asyncio
    async def test_orders_by_search_count_and_filters_minimum(self, cache):
        popular = CacheKey.of("tiktok", "cats")
        medium = CacheKey.of("tiktok", "dogs")
        rare = CacheKey.of("tiktok", "axolotl")
        for key in (popular, medium, rare):
            await cache.set(key, PAYLOAD)
        for _ in range(7):
            await cache.record_search(popular)
        for _ in range(5):
            await cache.record_search(medium)
        await cache.record_search(rare)

        assert await cache.top_by_usage(min_search_count=5, limit=10) == [popular, medium]
        assert await cache.top_by_usage(min_search_count=1, limit=1) == [popular]

    @pytest.mark.asyncio
    async def test_skips_keys_without_live_entry(self, cache):
        cached = CacheKey.of("tiktok", "cats")
        uncached = CacheKey.of("tiktok", "dogs")
        await cache.set(cached, PAYLOAD)
        for _ in range(10):
            await cache.record_search(uncached)
        await cache.record_search(cached)

        assert await cache.top_by_usage(min_search_count=1, limit=10) == [cached]

    @pytest.mark.asyncio
    async def test_search_count_is_reported_on_entry(self, cache):
        key = CacheKey.of("tiktok", "cats")
        await cache.record_search(key)
        await cache.set(key, PAYLOAD)
        await cache.record_search(key)

        entry = await cache.get_entry(key)

        assert entry.search_count == 2

    @pytest.mark.asyncio
    async def test_prune_usage_index_drops_expired_keys(self, cache, clock):
        short = CacheKey.of("tiktok", "short")
        long = CacheKey.of("tiktok", "long")
        await cache.set(short, PAYLOAD, ttl_seconds=10)
        await cache.set(long, PAYLOAD, ttl_seconds=1000)

        clock.advance(11)

        assert await cache.prune_usage_index() == 1
        assert await cache.top_by_usage(min_search_count=0, limit=10) == [long]


class TestClear:
    @pytest.mark.asyncio
    async def test_clear_removes_every_entry(self, cache):
        keys = [CacheKey.of("tiktok", f"query {i}") for i in range(3)]
        for key in keys:
            await cache.set(key, PAYLOAD)

        assert await cache.clear() == 3
        assert len(cache.l1) == 0
        for key in keys:
            assert await cache.get(key) is None


class TestAcrossProcesses:
    @pytest.mark.asyncio
    async def test_replaced_entry_reaches_process_holding_old_copy(
        self, store, keys, clock, test_settings
    ):
        def process_cache() -> SearchCache:
            l1 = BoundedMemoryCache(
                max_entries=100,
                default_ttl_seconds=test_settings.cache_l1_ttl_seconds,
                clock=clock,
            )
            return SearchCache(
                store, keys, l1, default_ttl_seconds=test_settings.cache_ttl_seconds, clock=clock
            )

        reader, recrawler = process_cache(), process_cache()
        key = CacheKey.of("tiktok", "cats")
        await recrawler.set(key, [{"id": "old"}])
        assert await reader.get(key) == [{"id": "old"}]

        # Links reported expired elsewhere; a fresh result replaces the entry
        await recrawler.invalidate(key)
        await recrawler.set(key, [{"id": "v1"}])
        clock.advance(test_settings.cache_l1_ttl_seconds + 1)

        assert await reader.get(key) == [{"id": "v1"}]

    def test_in_process_lifetime_is_short(self, test_settings):
        assert test_settings.cache_l1_ttl_seconds <= 300
        assert test_settings.cache_l1_ttl_seconds < test_settings.cache_ttl_seconds
