"""Durable prioritized job queue on top of the shared atomic store.

Layout:
    job:{id}                 hash with every job field
    queue:waiting:{priority} zset scored by ready-at (ms); FIFO per priority
    queue:active             zset scored by lease expiry (ms)
    queue:{terminal state}   zset scored by finish time (ms)
    queue:key:{cache key}    set of unfinished job ids for that key

All state changes go through the store's compare-and-swap ``transition``
primitive, so a job leaves a terminal state never, and only the worker
holding the current lease token can complete, fail or renew it.
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, Callable, Iterable

from clipscout.cache.cache_key import CacheKey
from clipscout.jobs.job_models import (
    PRIORITY_ORDER,
    TERMINAL_STATES,
    Job,
    JobKind,
    JobState,
)
from clipscout.main.exceptions import ScrapeError
from clipscout.main.logging import get_logger
from clipscout.store.atomic_store import AtomicStore
from clipscout.store.keys import StoreKeys
from clipscout.worker.backoff import BackoffPolicy

logger = get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 512


class JobQueue:
    def __init__(
        self,
        store: AtomicStore,
        keys: StoreKeys,
        *,
        max_attempts: int,
        retry_backoff: BackoffPolicy,
        lease_seconds: int,
        max_stalled_count: int,
        completed_ttl_seconds: int,
        failed_ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._keys = keys
        self._max_attempts = max_attempts
        self._retry_backoff = retry_backoff
        self._lease_seconds = lease_seconds
        self._max_stalled_count = max_stalled_count
        self._completed_ttl = completed_ttl_seconds
        self._failed_ttl = failed_ttl_seconds
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _waiting_keys(self) -> list[str]:
        return [self._keys.waiting(priority) for priority in PRIORITY_ORDER]

    def _ttl_for(self, state: JobState) -> int:
        return self._failed_ttl if state == JobState.FAILED else self._completed_ttl

    @staticmethod
    def new_job_id() -> str:
        return uuid.uuid4().hex

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    async def enqueue(
        self,
        key: CacheKey,
        kind: JobKind = JobKind.NORMAL,
        job_id: str | None = None,
        delay_seconds: float = 0,
    ) -> str:
        """Add a job for ``key``; returns its id.

        No duplicate suppression happens here. Callers that need one job per
        key hold the refresh lock before enqueuing.
        """
        job_id = job_id or self.new_job_id()
        now = self._now_ms()
        ready_at = now + int(delay_seconds * 1000)
        priority = kind.priority
        await self._store.add_job(
            job_key=self._keys.job(job_id),
            job_id=job_id,
            fields={
                "id": job_id,
                "platform": key.platform,
                "query": key.query,
                "date_range": key.date_range,
                "cache_key": str(key),
                "kind": kind.value,
                "priority": str(priority),
                "state": JobState.WAITING.value,
                "progress": "0",
                "attempts_made": "0",
                "max_attempts": str(self._max_attempts),
                "stalled_count": "0",
                "created_at": str(now),
                "ready_at": str(ready_at),
            },
            waiting_key=self._keys.waiting(priority),
            score=ready_at,
            index_key=self._keys.key_index(str(key)),
        )
        logger.info(
            "Enqueued job",
            extra={"job_id": job_id, "cache_key": str(key), "kind": kind.value},
        )
        return job_id

    async def get(self, job_id: str) -> Job | None:
        raw = await self._store.hgetall(self._keys.job(job_id))
        if not raw:
            return None
        return Job.from_hash(raw)

    async def jobs_for_key(self, key: CacheKey) -> list[Job]:
        """Unfinished jobs for ``key``."""
        jobs = []
        for job_id in await self._store.smembers(self._keys.key_index(str(key))):
            job = await self.get(job_id)
            if job is not None and not job.is_terminal:
                jobs.append(job)
        return sorted(jobs, key=lambda job: job.created_at)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    async def claim(self, worker_id: str) -> Job | None:
        """Atomically move the next ready job to ``active`` under a new lease."""
        now = self._now_ms()
        job_id = await self._store.claim_next(
            waiting_keys=self._waiting_keys(),
            active_key=self._keys.active(),
            job_key_prefix=self._keys.job_prefix(),
            now_ms=now,
            lease_until_ms=now + self._lease_seconds * 1000,
            token=uuid.uuid4().hex,
            worker_id=worker_id,
        )
        if job_id is None:
            return None
        return await self.get(job_id)

    async def _update_active(
        self, job: Job, fields: dict[str, str], **kwargs: Any
    ) -> bool:
        return await self._store.transition(
            job_key=self._keys.job(job.id),
            job_id=job.id,
            expected_states=[JobState.ACTIVE.value],
            expected_token=job.lease_token,
            fields=fields,
            **kwargs,
        )

    async def renew_lease(self, job: Job) -> bool:
        """Extend the lease; False means the lease was lost to a reclaim."""
        lease_until = self._now_ms() + self._lease_seconds * 1000
        return await self._update_active(
            job,
            {"lease_until": str(lease_until)},
            src_key=self._keys.active(),
            dst_key=self._keys.active(),
            dst_score=lease_until,
        )

    async def report_progress(self, job: Job, progress: int) -> bool:
        progress = max(0, min(100, int(progress)))
        return await self._update_active(job, {"progress": str(progress)})

    async def complete(
        self,
        job: Job,
        result: list[dict[str, Any]],
        outcome: str | None = None,
    ) -> bool:
        now = self._now_ms()
        fields = {
            "state": JobState.COMPLETED.value,
            "progress": "100",
            "result": json.dumps(result, default=str),
            "finished_at": str(now),
            "lease_token": "",
        }
        if outcome:
            fields["outcome"] = outcome
        done = await self._update_active(
            job,
            fields,
            increments={"attempts_made": 1},
            src_key=self._keys.active(),
            dst_key=self._keys.finished(JobState.COMPLETED.value),
            dst_score=now,
            index_key=self._keys.key_index(str(job.cache_key)),
            ttl_seconds=self._completed_ttl,
        )
        if done:
            logger.info(
                "Job completed",
                extra={"job_id": job.id, "items": len(result), "outcome": outcome},
            )
        return done

    async def fail(self, job: Job, error: ScrapeError) -> JobState | None:
        """Record a failed attempt.

        Retryable errors go back to ``waiting`` with backoff while attempts
        remain; everything else is terminal. Returns the resulting state, or
        None if the lease was lost in the meantime.
        """
        now = self._now_ms()
        attempt = job.attempts_made + 1
        common = {
            "error_code": error.code.value,
            "error_message": str(error)[:MAX_ERROR_MESSAGE_LENGTH],
            "lease_token": "",
            "worker_id": "",
        }

        if error.retryable and attempt < job.max_attempts:
            delay = self._retry_backoff.delay_for(attempt)
            ready_at = now + int(delay * 1000)
            moved = await self._update_active(
                job,
                {
                    **common,
                    "state": JobState.WAITING.value,
                    "progress": "0",
                    "ready_at": str(ready_at),
                },
                increments={"attempts_made": 1},
                src_key=self._keys.active(),
                dst_key=self._keys.waiting(job.priority),
                dst_score=ready_at,
            )
            if moved:
                logger.warning(
                    "Job attempt failed, retrying",
                    extra={
                        "job_id": job.id,
                        "attempt": attempt,
                        "max_attempts": job.max_attempts,
                        "retry_in_seconds": delay,
                        "error_code": error.code.value,
                    },
                )
                return JobState.WAITING
            return None

        moved = await self._update_active(
            job,
            {**common, "state": JobState.FAILED.value, "finished_at": str(now)},
            increments={"attempts_made": 1},
            src_key=self._keys.active(),
            dst_key=self._keys.finished(JobState.FAILED.value),
            dst_score=now,
            index_key=self._keys.key_index(str(job.cache_key)),
            ttl_seconds=self._failed_ttl,
        )
        if moved:
            logger.error(
                "Job failed",
                extra={
                    "job_id": job.id,
                    "attempt": attempt,
                    "error_code": error.code.value,
                    "retryable": error.retryable,
                },
            )
            return JobState.FAILED
        return None

    async def finish_cancelled(self, job: Job) -> bool:
        """Worker acknowledges a cancellation request for its active job."""
        now = self._now_ms()
        return await self._update_active(
            job,
            {
                "state": JobState.CANCELLED.value,
                "finished_at": str(now),
                "error_code": "CANCELLED",
                "lease_token": "",
            },
            src_key=self._keys.active(),
            dst_key=self._keys.finished(JobState.CANCELLED.value),
            dst_score=now,
            index_key=self._keys.key_index(str(job.cache_key)),
            ttl_seconds=self._completed_ttl,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    async def _cancel_waiting(self, job: Job, reason: str | None) -> bool:
        now = self._now_ms()
        fields = {
            "state": JobState.CANCELLED.value,
            "finished_at": str(now),
            "error_code": "CANCELLED",
        }
        if reason:
            fields["error_message"] = reason
        return await self._store.transition(
            job_key=self._keys.job(job.id),
            job_id=job.id,
            expected_states=[JobState.WAITING.value],
            expected_token=None,
            fields=fields,
            src_key=self._keys.waiting(job.priority),
            dst_key=self._keys.finished(JobState.CANCELLED.value),
            dst_score=now,
            index_key=self._keys.key_index(str(job.cache_key)),
            ttl_seconds=self._completed_ttl,
        )

    async def cancel(self, job_id: str, reason: str | None = None) -> bool:
        """Cancel a job.

        A waiting job becomes ``cancelled`` immediately. An active job only
        gets its cancellation flag set; the worker checks it between steps.

        Returns:
            True if the job was cancelled or the request was recorded,
            False if the job is unknown or already finished.
        """
        for _ in range(2):
            job = await self.get(job_id)
            if job is None or job.is_terminal:
                return False

            if job.state == JobState.WAITING:
                if await self._cancel_waiting(job, reason):
                    logger.info("Cancelled waiting job", extra={"job_id": job_id})
                    return True
                # Raced with a claim; look again
                continue

            requested = await self._store.transition(
                job_key=self._keys.job(job.id),
                job_id=job.id,
                expected_states=[JobState.ACTIVE.value],
                expected_token=None,
                fields={"cancel_requested": "1"},
            )
            if requested:
                logger.info("Requested cancellation of active job", extra={"job_id": job_id})
                return True
        return False

    async def remove_waiting_for_key(
        self,
        key: CacheKey,
        kinds: Iterable[JobKind],
        reason: str | None = None,
    ) -> list[str]:
        """Cancel waiting jobs of the given kinds for ``key``; returns their ids."""
        kinds = set(kinds)
        removed = []
        for job in await self.jobs_for_key(key):
            if job.state != JobState.WAITING or job.kind not in kinds:
                continue
            if await self._cancel_waiting(job, reason):
                removed.append(job.id)
        return removed

    async def drain(self) -> int:
        """Cancel every waiting job."""
        drained = 0
        for waiting_key in self._waiting_keys():
            for job_id in await self._store.zrange_by_rank(waiting_key, 0, -1):
                job = await self.get(job_id)
                if job is None:
                    await self._store.zrem(waiting_key, job_id)
                    continue
                if await self._cancel_waiting(job, "queue drained"):
                    drained += 1
        logger.info("Drained waiting jobs", extra={"drained": drained})
        return drained

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    async def queue_position(self, job: Job) -> int | None:
        """Approximate number of jobs ahead of ``job`` in its priority class."""
        if job.state != JobState.WAITING:
            return None
        return await self._store.zrank(self._keys.waiting(job.priority), job.id)

    async def waiting_count(self) -> int:
        total = 0
        for waiting_key in self._waiting_keys():
            total += await self._store.zcard(waiting_key)
        return total

    async def counts(self) -> dict[str, int]:
        counts = {JobState.WAITING.value: await self.waiting_count()}
        counts[JobState.ACTIVE.value] = await self._store.zcard(self._keys.active())
        for state in TERMINAL_STATES:
            counts[state.value] = await self._store.zcard(self._keys.finished(state.value))
        return counts

    async def recent(self, state: JobState, limit: int = 10) -> list[Job]:
        if state == JobState.WAITING:
            ids = []
            for waiting_key in self._waiting_keys():
                ids.extend(await self._store.zrange_by_rank(waiting_key, 0, limit - 1))
            ids = ids[:limit]
        elif state == JobState.ACTIVE:
            ids = await self._store.zrange_by_rank(self._keys.active(), 0, limit - 1)
        else:
            ids = await self._store.zrange_by_rank(
                self._keys.finished(state.value), 0, limit - 1, desc=True
            )
        jobs = []
        for job_id in ids:
            job = await self.get(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    async def reclaim_stalled(self) -> list[tuple[str, str]]:
        outcomes = await self._store.reclaim_stalled(
            active_key=self._keys.active(),
            failed_key=self._keys.finished(JobState.FAILED.value),
            job_key_prefix=self._keys.job_prefix(),
            waiting_key_prefix=self._keys.waiting_prefix(),
            index_key_prefix=self._keys.key_index_prefix(),
            now_ms=self._now_ms(),
            max_stalled=self._max_stalled_count,
            failed_ttl_seconds=self._failed_ttl,
        )
        for job_id, outcome in outcomes:
            logger.warning(
                "Reclaimed stalled job",
                extra={"job_id": job_id, "outcome": outcome},
            )
        return outcomes

    async def _delete_finished(self, state: JobState, job_ids: list[str]) -> int:
        if not job_ids:
            return 0
        await self._store.zrem(self._keys.finished(state.value), *job_ids)
        await self._store.delete(*[self._keys.job(job_id) for job_id in job_ids])
        return len(job_ids)

    async def clean(self, state: JobState, grace_seconds: int, limit: int = 1000) -> list[str]:
        """Delete up to ``limit`` finished jobs older than ``grace_seconds``."""
        if state not in TERMINAL_STATES:
            raise ValueError(f"Only finished jobs can be cleaned, got {state.value}")
        cutoff = self._now_ms() - grace_seconds * 1000
        job_ids = await self._store.zrange_by_score(
            self._keys.finished(state.value), float("-inf"), cutoff, 0, limit
        )
        await self._delete_finished(state, job_ids)
        return job_ids

    async def trim_finished(
        self, state: JobState, max_count: int, max_age_seconds: int
    ) -> int:
        """Apply a retention bound; whichever of count or age is hit first wins."""
        removed = len(await self.clean(state, max_age_seconds, limit=10_000))
        overflow = await self._store.zcard(self._keys.finished(state.value)) - max_count
        if overflow > 0:
            oldest = await self._store.zrange_by_rank(
                self._keys.finished(state.value), 0, overflow - 1
            )
            removed += await self._delete_finished(state, oldest)
        return removed
