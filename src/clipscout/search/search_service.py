"""Entry points used by the request-serving side of the pipeline."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from pydantic import BaseModel

from clipscout.cache.cache_key import CacheKey
from clipscout.cache.search_cache import SearchCache
from clipscout.jobs.job_models import JobKind, JobState, JobStatus
from clipscout.jobs.job_queue import JobQueue
from clipscout.jobs.status_reader import JobStatusReader
from clipscout.main.logging import get_logger
from clipscout.recrawl.recrawl_service import RecrawlCoordinator, RecrawlTicket
from clipscout.search.validation import build_search_key

logger = get_logger(__name__)

MIN_ESTIMATED_WAIT_SECONDS = 15
SECONDS_PER_WAITING_JOB = 2


class SearchResponse(BaseModel):
    """Either an immediate cached result or the id of the job computing it."""

    cache_key: str
    cached: bool
    state: JobState
    result: Optional[list[dict[str, Any]]] = None
    job_id: Optional[str] = None
    queue_position: Optional[int] = None
    estimated_wait_seconds: Optional[int] = None


def estimate_wait_seconds(waiting: int) -> int:
    return max(MIN_ESTIMATED_WAIT_SECONDS, waiting * SECONDS_PER_WAITING_JOB)


class SearchService:
    def __init__(
        self,
        cache: SearchCache,
        queue: JobQueue,
        status_reader: JobStatusReader,
        recrawl: RecrawlCoordinator,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self._cache = cache
        self._queue = queue
        self._status_reader = status_reader
        self._recrawl = recrawl
        self._sleep = sleep

    async def enqueue_search(
        self, platform: str, query: str, date_range: str | None = None
    ) -> SearchResponse:
        """Serve the search from cache or enqueue a job for it."""
        key = build_search_key(platform, query, date_range)
        await self._cache.record_search(key)

        cached = await self._cache.get(key)
        if cached is not None:
            logger.debug("Cache hit", extra={"cache_key": str(key)})
            return SearchResponse(
                cache_key=str(key),
                cached=True,
                state=JobState.COMPLETED,
                result=cached,
            )

        job_id = await self._queue.enqueue(key, JobKind.NORMAL)
        job = await self._queue.get(job_id)
        position = await self._queue.queue_position(job) if job is not None else None
        waiting = await self._queue.waiting_count()
        return SearchResponse(
            cache_key=str(key),
            cached=False,
            state=JobState.WAITING,
            job_id=job_id,
            queue_position=position,
            estimated_wait_seconds=estimate_wait_seconds(waiting),
        )

    async def poll_status(self, job_id: str) -> JobStatus:
        return await self._status_reader.status(job_id)

    async def cancel(self, job_id: str) -> bool:
        return await self._queue.cancel(job_id, reason="Cancelled by caller")

    async def report_link_expired(
        self, platform: str, query: str, date_range: str | None = None
    ) -> RecrawlTicket:
        return await self._recrawl.report_link_expired(platform, query, date_range)

    async def popular_keys(self, min_search_count: int, limit: int) -> list[CacheKey]:
        return await self._cache.top_by_usage(min_search_count, limit)

    async def refresh_popular(
        self,
        min_search_count: int,
        limit: int,
        spacing_seconds: float = 0.0,
    ) -> dict:
        """Enqueue an auto-refresh job for every popular key without one pending."""
        results = {"found": 0, "queued": 0, "skipped": 0, "errors": [], "success": True}

        keys = await self.popular_keys(min_search_count, limit)
        results["found"] = len(keys)

        for index, key in enumerate(keys):
            try:
                if await self._queue.jobs_for_key(key):
                    results["skipped"] += 1
                    continue
                await self._queue.enqueue(key, JobKind.AUTO_REFRESH)
                results["queued"] += 1
            except Exception as e:
                error_msg = f"Failed to queue refresh for {key}: {str(e)}"
                logger.error(error_msg, exc_info=True)
                results["errors"].append(error_msg)
                results["success"] = False

            if spacing_seconds > 0 and index < len(keys) - 1:
                await self._sleep(spacing_seconds)

        if results["queued"]:
            logger.info(
                f"Queued {results['queued']} popular searches for refresh",
                extra={"found": results["found"], "skipped": results["skipped"]},
            )
        return results
