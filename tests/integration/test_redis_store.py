"""Lua-backed primitives of RedisAtomicStore against a real Redis."""

import pytest

from clipscout.coordination.lock import RefreshLock
from clipscout.coordination.rate_limiter import RateLimiter
from clipscout.main.exceptions import StoreUnavailableError
from clipscout.redis.connection import create_redis_client
from clipscout.store.redis_store import RedisAtomicStore


async def test_compare_and_set(redis_store):
    assert await redis_store.compare_and_set("k", None, "a", ttl_seconds=60) is True
    assert await redis_store.compare_and_set("k", None, "b") is False
    assert await redis_store.compare_and_set("k", "wrong", "b") is False
    assert await redis_store.compare_and_set("k", "a", "b", ttl_seconds=60) is True

    assert await redis_store.get("k") == "b"
    assert 0 < await redis_store.ttl("k") <= 60


async def test_compare_and_delete(redis_store):
    await redis_store.set("k", "owner")

    assert await redis_store.compare_and_delete("k", "intruder") is False
    assert await redis_store.compare_and_delete("k", "owner") is True
    assert await redis_store.get("k") is None


async def test_incr_with_expiry_keeps_first_window(redis_store):
    first = await redis_store.incr_with_expiry("counter", 100)
    second = await redis_store.incr_with_expiry("counter", 500)

    assert first[0] == 1
    assert second[0] == 2
    assert second[1] <= 100


async def test_replace_and_touch_hash(redis_store):
    await redis_store.replace_hash("h", {"payload": "[]", "access_count": "0"}, ttl_seconds=60)

    assert await redis_store.touch_hash("h", "access_count", 2, {"last": "now"}) is True
    assert await redis_store.touch_hash("missing", "access_count", 1, {}) is False
    assert await redis_store.hgetall("h") == {"payload": "[]", "access_count": "2", "last": "now"}
    assert await redis_store.exists("missing") is False


async def test_sorted_set_reads(redis_store):
    await redis_store.zincrby("usage", "a", 3)
    await redis_store.zincrby("usage", "b", 1)
    await redis_store.zadd("usage", "c", 5)
    assert await redis_store.zadd("usage", "c", 0, nx=True) is False

    rows = await redis_store.zrevrange_by_score("usage", float("inf"), 2)

    assert rows == [("c", 5.0), ("a", 3.0)]
    assert await redis_store.zrange_by_score("usage", float("-inf"), 3) == ["b", "a"]
    assert await redis_store.zrank("usage", "a") == 1


async def test_lock_and_rate_limiter(redis_store, keys):
    lock = RefreshLock(redis_store, keys, ttl_seconds=300)
    limiter = RateLimiter(redis_store)

    assert await lock.try_acquire("tiktok:cats:all", "job-1") is True
    assert await lock.try_acquire("tiktok:cats:all", "job-2") is False
    assert await lock.release_if_held("tiktok:cats:all", "job-2") is False
    assert await lock.release_if_held("tiktok:cats:all", "job-1") is True

    results = [await limiter.check_and_increment("rate", 2, 60) for _ in range(3)]
    assert [result.allowed for result in results] == [True, True, False]
    assert results[-1].retry_after_seconds > 0


async def test_unreachable_redis_is_store_unavailable(test_settings):
    settings = test_settings.model_copy(update={"redis_port": 1, "redis_conn_timeout": 1})
    store = RedisAtomicStore(create_redis_client(settings))

    try:
        with pytest.raises(StoreUnavailableError):
            await store.get("anything")
        assert await store.ping() is False
    finally:
        await store.close()
