from __future__ import annotations

from typing import Any

from clipscout.cache.cache_key import CacheKey
from clipscout.cache.search_cache import SearchCache
from clipscout.jobs.job_models import Job, JobState
from clipscout.jobs.job_queue import JobQueue
from clipscout.main.logging import get_logger
from clipscout.recrawl.recrawl_service import RecrawlCoordinator

logger = get_logger(__name__)

RECENT_JOBS_PER_STATE = 10


def _summarize(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "cache_key": str(job.cache_key),
        "kind": job.kind.value,
        "state": job.state.value,
        "progress": job.progress,
        "attempts_made": job.attempts_made,
        "created_at": job.created_at.isoformat(),
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
        "error_code": job.error_code,
    }


class AdminService:
    """Operational controls over the queue, the cache and recrawl gating."""

    def __init__(
        self,
        queue: JobQueue,
        cache: SearchCache,
        recrawl: RecrawlCoordinator,
    ):
        self._queue = queue
        self._cache = cache
        self._recrawl = recrawl

    async def queue_stats(self) -> dict[str, Any]:
        counts = await self._queue.counts()
        recent = {}
        for state in JobState:
            jobs = await self._queue.recent(state, RECENT_JOBS_PER_STATE)
            recent[state.value] = [_summarize(job) for job in jobs]
        return {"counts": counts, "recent": recent}

    async def clean(self, state: JobState, grace_seconds: int, limit: int = 1000) -> int:
        removed = await self._queue.clean(state, grace_seconds, limit)
        logger.info(
            f"Cleaned {len(removed)} {state.value} jobs",
            extra={"state": state.value, "grace_seconds": grace_seconds},
        )
        return len(removed)

    async def drain(self) -> int:
        return await self._queue.drain()

    async def clear_cache(self) -> int:
        return await self._cache.clear()

    async def clear_recrawl_lock(self, platform: str, query: str, date_range: str | None = None) -> bool:
        return await self._recrawl.clear_lock(CacheKey.of(platform, query, date_range))

    async def reset_recrawl_rate_limit(
        self, platform: str, query: str, date_range: str | None = None
    ) -> bool:
        return await self._recrawl.reset_rate_limit(CacheKey.of(platform, query, date_range))
