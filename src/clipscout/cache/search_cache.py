"""Two-level search result cache.

L1 is a bounded per-process map, L2 a hash per entry in the shared store
whose lifetime is enforced by the store's own key expiry. Usage counters
live in a sorted set so the most searched keys can be ranked without
scanning entries.
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel

from clipscout.cache.cache_key import CacheKey
from clipscout.cache.memory_cache import BoundedMemoryCache
from clipscout.main.logging import get_logger
from clipscout.store.atomic_store import AtomicStore
from clipscout.store.keys import StoreKeys

logger = get_logger(__name__)

Payload = list[dict[str, Any]]


def _to_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class CacheEntry(BaseModel):
    key: str
    payload: Payload
    created_at: datetime
    expires_at: datetime
    access_count: int = 0
    search_count: int = 0
    last_accessed_at: datetime | None = None


class SearchCache:
    def __init__(
        self,
        store: AtomicStore,
        keys: StoreKeys,
        l1: BoundedMemoryCache,
        default_ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._keys = keys
        self._l1 = l1
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    @property
    def l1(self) -> BoundedMemoryCache:
        return self._l1

    async def get(self, key: CacheKey | str) -> Payload | None:
        """Return the cached payload or ``None`` when absent or expired.

        A hit bumps the access counter of the tier that served it.
        """
        cache_key = str(key)
        payload = self._l1.get(cache_key)
        if payload is not None:
            return payload

        entry_key = self._keys.cache_entry(cache_key)
        raw = await self._store.hgetall(entry_key)
        if not raw:
            return None

        now = self._clock()
        expires_at = float(raw.get("expires_at", 0))
        if expires_at <= now:
            # Normally the store's expiry got there first
            await self._store.delete(entry_key)
            return None

        await self._store.touch_hash(
            entry_key, "access_count", 1, {"last_accessed_at": repr(now)}
        )
        payload = json.loads(raw["payload"])
        self._l1.set(cache_key, payload, expires_at=expires_at)
        return payload

    async def get_entry(self, key: CacheKey | str) -> CacheEntry | None:
        """Read an entry with its metadata, without counting it as an access."""
        cache_key = str(key)
        raw = await self._store.hgetall(self._keys.cache_entry(cache_key))
        if not raw or float(raw.get("expires_at", 0)) <= self._clock():
            return None
        search_count = await self._store.zscore(self._keys.cache_usage(), cache_key)
        return CacheEntry(
            key=cache_key,
            payload=json.loads(raw["payload"]),
            created_at=_to_datetime(raw["created_at"]),
            expires_at=_to_datetime(raw["expires_at"]),
            access_count=int(raw.get("access_count", 0)),
            search_count=int(search_count or 0),
            last_accessed_at=_to_datetime(raw.get("last_accessed_at")),
        )

    async def set(
        self,
        key: CacheKey | str,
        payload: Payload,
        ttl_seconds: int | None = None,
    ) -> None:
        """Insert or fully replace the entry for ``key``."""
        cache_key = str(key)
        ttl = ttl_seconds or self._default_ttl
        now = self._clock()
        expires_at = now + ttl

        await self._store.replace_hash(
            self._keys.cache_entry(cache_key),
            {
                "payload": json.dumps(payload, default=str),
                "created_at": repr(now),
                "expires_at": repr(expires_at),
                "access_count": "0",
                "last_accessed_at": "",
            },
            ttl_seconds=ttl,
        )
        await self._store.zadd(self._keys.cache_usage(), cache_key, 0, nx=True)
        self._l1.set(cache_key, payload, expires_at=expires_at)

        logger.debug(
            "Cached search result",
            extra={"cache_key": cache_key, "items": len(payload), "ttl_seconds": ttl},
        )

    async def invalidate(self, key: CacheKey | str) -> None:
        cache_key = str(key)
        self._l1.invalidate(cache_key)
        await self._store.delete(self._keys.cache_entry(cache_key))

    async def record_search(self, key: CacheKey | str) -> int:
        """Count one search request that resolved to ``key``."""
        score = await self._store.zincrby(self._keys.cache_usage(), str(key), 1)
        return int(score)

    async def top_by_usage(self, min_search_count: int, limit: int) -> list[CacheKey]:
        """Most searched keys that still have a live entry, busiest first."""
        if limit <= 0:
            return []

        found: list[CacheKey] = []
        offset = 0
        page_size = max(limit * 2, 20)
        while len(found) < limit:
            rows = await self._store.zrevrange_by_score(
                self._keys.cache_usage(),
                float("inf"),
                min_search_count,
                offset=offset,
                count=page_size,
            )
            if not rows:
                break
            for member, _ in rows:
                if await self._store.exists(self._keys.cache_entry(member)):
                    found.append(CacheKey.parse(member))
                    if len(found) >= limit:
                        break
            offset += page_size
        return found

    async def prune_usage_index(self) -> int:
        """Drop usage counters of keys whose entry has expired."""
        usage_key = self._keys.cache_usage()
        members = await self._store.zrange_by_rank(usage_key, 0, -1)
        stale = [
            member
            for member in members
            if not await self._store.exists(self._keys.cache_entry(member))
        ]
        if stale:
            await self._store.zrem(usage_key, *stale)
        return len(stale)

    async def clear(self) -> int:
        """Remove every entry known to the usage index and empty L1."""
        usage_key = self._keys.cache_usage()
        members = await self._store.zrange_by_rank(usage_key, 0, -1)
        deleted = 0
        if members:
            deleted = await self._store.delete(
                *[self._keys.cache_entry(member) for member in members]
            )
        await self._store.delete(usage_key)
        self._l1.clear()
        logger.info("Cleared search cache", extra={"deleted": deleted})
        return deleted
