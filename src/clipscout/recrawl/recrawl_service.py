"""Repair of cache entries whose media links have expired.

The refresh lock is taken before anything else happens, so two concurrent
reports for the same key can never both enqueue a recrawl: the loser sees
the winner's job id as the lock holder and defers to it.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from clipscout.cache.cache_key import CacheKey
from clipscout.cache.search_cache import SearchCache
from clipscout.coordination.lock import RefreshLock
from clipscout.coordination.rate_limiter import RateLimiter
from clipscout.jobs.job_models import JobKind
from clipscout.jobs.job_queue import JobQueue
from clipscout.main.exceptions import (
    ErrorCode,
    LockContendedError,
    RecrawlDisabledError,
    RecrawlRateLimitedError,
)
from clipscout.main.logging import get_logger
from clipscout.search.validation import build_search_key
from clipscout.store.keys import StoreKeys

logger = get_logger(__name__)

LOCK_ATTEMPTS = 3
SUPERSEDED_KINDS = (JobKind.NORMAL, JobKind.AUTO_REFRESH)


class RecrawlTicket(BaseModel):
    job_id: str
    cache_key: str
    already_in_progress: bool
    code: Optional[ErrorCode] = None
    superseded_job_ids: list[str] = []


class RecrawlState(BaseModel):
    cache_key: str
    lock_holder: Optional[str] = None
    lock_ttl_seconds: Optional[int] = None
    rate_count: int = 0
    rate_limit: int
    rate_window_remaining_seconds: Optional[int] = None


class RecrawlCoordinator:
    def __init__(
        self,
        queue: JobQueue,
        cache: SearchCache,
        lock: RefreshLock,
        rate_limiter: RateLimiter,
        keys: StoreKeys,
        *,
        enabled: bool,
        rate_limit_per_window: int,
        rate_window_seconds: int,
    ):
        self._queue = queue
        self._cache = cache
        self._lock = lock
        self._rate_limiter = rate_limiter
        self._keys = keys
        self._enabled = enabled
        self._rate_limit = rate_limit_per_window
        self._rate_window = rate_window_seconds

    def _rate_key(self, key: CacheKey) -> str:
        return self._keys.recrawl_rate(key.rate_scope)

    async def _acquire_or_defer(self, key: CacheKey, job_id: str) -> RecrawlTicket | None:
        """Take the lock for ``job_id``, or return the ticket of the refresh in flight."""
        for _ in range(LOCK_ATTEMPTS):
            if await self._lock.try_acquire(key, job_id):
                return None

            holder = await self._lock.holder(key)
            if holder is None:
                # Expired between the two calls
                continue

            holder_job = await self._queue.get(holder)
            if holder_job is None or not holder_job.is_terminal:
                logger.info(
                    "Recrawl already in progress",
                    extra={"cache_key": str(key), "holder_job_id": holder},
                )
                return RecrawlTicket(
                    job_id=holder,
                    cache_key=str(key),
                    already_in_progress=True,
                    code=ErrorCode.LOCK_CONTENDED,
                )

            logger.info(
                "Clearing refresh lock of finished job",
                extra={
                    "cache_key": str(key),
                    "holder_job_id": holder,
                    "holder_state": holder_job.state.value,
                },
            )
            await self._lock.release_if_held(key, holder)

        raise LockContendedError(f"Could not take the refresh lock for {key}")

    async def report_link_expired(
        self, platform: str, query: str, date_range: str | None = None
    ) -> RecrawlTicket:
        """Invalidate the entry for the search and enqueue one recrawl job.

        Raises:
            RecrawlDisabledError: Recrawl is switched off.
            InvalidInputError: The search is malformed.
            RecrawlRateLimitedError: The key was recrawled too often recently.
        """
        if not self._enabled:
            raise RecrawlDisabledError()

        key = build_search_key(platform, query, date_range)
        job_id = self._queue.new_job_id()

        in_progress = await self._acquire_or_defer(key, job_id)
        if in_progress is not None:
            return in_progress

        try:
            rate = await self._rate_limiter.check_and_increment(
                self._rate_key(key), self._rate_limit, self._rate_window
            )
            if not rate.allowed:
                raise RecrawlRateLimitedError(str(key), rate.retry_after_seconds)

            await self._cache.invalidate(key)
            superseded = await self._queue.remove_waiting_for_key(
                key, SUPERSEDED_KINDS, reason=f"Superseded by recrawl {job_id}"
            )
            await self._queue.enqueue(key, JobKind.RECRAWL, job_id=job_id)
        except Exception:
            await self._lock.release_if_held(key, job_id)
            raise

        logger.info(
            "Recrawl enqueued",
            extra={
                "job_id": job_id,
                "cache_key": str(key),
                "superseded": len(superseded),
                "rate_count": rate.current_count,
            },
        )
        return RecrawlTicket(
            job_id=job_id,
            cache_key=str(key),
            already_in_progress=False,
            superseded_job_ids=superseded,
        )

    async def recrawl_state(
        self, platform: str, query: str, date_range: str | None = None
    ) -> RecrawlState:
        key = build_search_key(platform, query, date_range)
        count, window_remaining = await self._rate_limiter.peek(self._rate_key(key))
        return RecrawlState(
            cache_key=str(key),
            lock_holder=await self._lock.holder(key),
            lock_ttl_seconds=await self._lock.ttl(key),
            rate_count=count,
            rate_limit=self._rate_limit,
            rate_window_remaining_seconds=window_remaining,
        )

    async def clear_lock(self, key: CacheKey) -> bool:
        cleared = await self._lock.release(key)
        logger.info("Cleared refresh lock", extra={"cache_key": str(key), "cleared": cleared})
        return cleared

    async def reset_rate_limit(self, key: CacheKey) -> bool:
        reset = await self._rate_limiter.reset(self._rate_key(key))
        logger.info("Reset recrawl rate limit", extra={"cache_key": str(key), "reset": reset})
        return reset
