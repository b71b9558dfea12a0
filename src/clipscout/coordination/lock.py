"""Per-key refresh lock backed by the shared store.

Uses atomic SET NX with TTL so that a crashed holder's lock disappears on its
own. Release is owner-checked unless explicitly forced.
"""

from __future__ import annotations

from clipscout.cache.cache_key import CacheKey
from clipscout.main.logging import get_logger
from clipscout.store.atomic_store import AtomicStore
from clipscout.store.keys import StoreKeys

logger = get_logger(__name__)


class RefreshLock:
    """At most one refresh job per cache key.

    Args:
        store: Shared atomic store.
        keys: Key layout.
        ttl_seconds: Lock expiry, bounding the cost of a crashed worker.
    """

    def __init__(self, store: AtomicStore, keys: StoreKeys, ttl_seconds: int) -> None:
        self._store = store
        self._keys = keys
        self._ttl = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def _lock_key(self, key: CacheKey | str) -> str:
        return self._keys.recrawl_lock(str(key))

    async def try_acquire(
        self,
        key: CacheKey | str,
        holder_id: str,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Take the lock for ``key`` if nobody holds it.

        Returns:
            True if ``holder_id`` now holds the lock.
        """
        acquired = await self._store.compare_and_set(
            self._lock_key(key), None, holder_id, ttl_seconds or self._ttl
        )
        logger.debug(
            "Refresh lock %s" % ("acquired" if acquired else "contended"),
            extra={"cache_key": str(key), "holder_id": holder_id},
        )
        return acquired

    async def holder(self, key: CacheKey | str) -> str | None:
        return await self._store.get(self._lock_key(key))

    async def ttl(self, key: CacheKey | str) -> int | None:
        return await self._store.ttl(self._lock_key(key))

    async def release(self, key: CacheKey | str) -> bool:
        """Delete the lock whoever holds it."""
        return await self._store.delete(self._lock_key(key)) == 1

    async def release_if_held(self, key: CacheKey | str, holder_id: str) -> bool:
        """Delete the lock only if ``holder_id`` still holds it.

        Returns:
            True if the lock was released, False if it expired or was
            taken over by another holder.
        """
        return await self._store.compare_and_delete(self._lock_key(key), holder_id)
