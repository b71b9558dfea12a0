"""Pool of concurrent job processors sharing one process.

Each slot claims the next ready job, renews its lease while the external
scrape runs, then writes the cache and reports the outcome to the queue.
Several processes may run pools against the same store; the queue's lease
tokens keep them from finishing each other's jobs.
"""

from __future__ import annotations

import asyncio
import os
import socket
import time
import uuid
from typing import Any, Callable

from clipscout.cache.search_cache import SearchCache
from clipscout.coordination.lock import RefreshLock
from clipscout.jobs.job_models import Job, JobKind, JobState
from clipscout.jobs.job_queue import JobQueue
from clipscout.main.exceptions import (
    InvalidInputError,
    NoResultsError,
    StoreUnavailableError,
)
from clipscout.main.job_context import clear_job_context, set_job_context
from clipscout.main.logging import get_logger
from clipscout.scraping.classify import classify_scrape_error
from clipscout.scraping.scrape_models import ScrapeRequest
from clipscout.scraping.scrape_operation import ScrapeOperation
from clipscout.store.atomic_store import AtomicStore
from clipscout.store.keys import StoreKeys
from clipscout.worker.heartbeat import LeaseHeartbeat

logger = get_logger(__name__)

NO_RESULTS_OUTCOME = "NO_RESULTS"


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class ScrapeWorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        cache: SearchCache,
        scrape_operation: ScrapeOperation,
        lock: RefreshLock,
        *,
        concurrency: int,
        poll_interval_seconds: float,
        lease_renew_seconds: float,
        max_results: int,
        store: AtomicStore | None = None,
        keys: StoreKeys | None = None,
        health_ttl_seconds: int = 60,
        worker_id: str | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self._queue = queue
        self._cache = cache
        self._scrape_operation = scrape_operation
        self._lock = lock
        self._concurrency = max(1, concurrency)
        self._poll_interval = poll_interval_seconds
        self._lease_renew = lease_renew_seconds
        self._max_results = max_results
        self._store = store
        self._keys = keys
        self._health_ttl = health_ttl_seconds
        self.worker_id = worker_id or default_worker_id()
        self._sleep = sleep
        self._running = False
        self._in_flight = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return self._in_flight

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    async def run_forever(self) -> None:
        """Run ``concurrency`` slots until ``stop`` is called or the task is cancelled."""
        self._running = True
        logger.info(
            "Starting scrape worker pool",
            extra={"worker_id": self.worker_id, "concurrency": self._concurrency},
        )
        slots = [
            asyncio.create_task(self._slot_loop(slot)) for slot in range(self._concurrency)
        ]
        tasks = list(slots)
        if self._store is not None and self._keys is not None:
            tasks.append(asyncio.create_task(self._health_loop()))

        try:
            await asyncio.gather(*slots)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._running = False
            logger.info("Scrape worker pool stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Let slots finish their current job and exit."""
        self._running = False

    async def _slot_loop(self, slot: int) -> None:
        while self._running:
            try:
                processed = await self.process_next()
            except StoreUnavailableError as exc:
                logger.warning(
                    "Store unavailable, backing off",
                    extra={"worker_id": self.worker_id, "slot": slot, "error": str(exc)},
                )
                processed = False
            except Exception:
                logger.exception(
                    "Unexpected error in worker slot",
                    extra={"worker_id": self.worker_id, "slot": slot},
                )
                processed = False

            if not processed:
                await self._sleep(self._poll_interval)

    async def _health_loop(self) -> None:
        interval = max(1.0, self._health_ttl / 3)
        while self._running:
            try:
                await self.write_health()
            except StoreUnavailableError as exc:
                logger.warning("Failed to write worker health", extra={"error": str(exc)})
            await self._sleep(interval)

    async def write_health(self) -> None:
        value = (
            f"worker_id={self.worker_id} in_flight={self._in_flight} "
            f"concurrency={self._concurrency} ts={int(time.time())}"
        )
        await self._store.set(self._keys.worker_health(), value, ttl_seconds=self._health_ttl)

    # ------------------------------------------------------------------
    # One job
    # ------------------------------------------------------------------
    async def process_next(self) -> bool:
        """Claim and process one job; False when nothing was ready."""
        job = await self._queue.claim(self.worker_id)
        if job is None:
            return False

        self._in_flight += 1
        try:
            await self.process(job)
        finally:
            self._in_flight -= 1
        return True

    async def process(self, job: Job) -> None:
        set_job_context(job_id=job.id, cache_key=str(job.cache_key), worker_id=self.worker_id)
        try:
            await self._queue.report_progress(job, 10)
            async with LeaseHeartbeat(self._queue, job, self._lease_renew) as heartbeat:
                await self._run_job(job, heartbeat)
        finally:
            if job.kind == JobKind.RECRAWL:
                await self._release_lock_if_finished(job)
            clear_job_context()

    async def _run_job(self, job: Job, heartbeat: LeaseHeartbeat) -> None:
        if await self._cancel_if_requested(job):
            return

        try:
            request = ScrapeRequest.for_key(job.cache_key, self._max_results)
        except ValueError as exc:
            await self._queue.fail(job, InvalidInputError(f"Unsupported search {job.cache_key}: {exc}"))
            return

        try:
            items = await self._scrape_operation.fetch(request)
        except Exception as exc:
            if heartbeat.lost:
                return
            error = classify_scrape_error(exc)
            set_job_context(error_code=error.code.value)
            await self._queue.fail(job, error)
            return

        if heartbeat.lost:
            logger.warning("Dropping result of job whose lease was lost", extra={"job_id": job.id})
            return
        if await self._cancel_if_requested(job):
            return

        if not items:
            if not job.is_final_attempt:
                # Scrapers sometimes return nothing on a cold start
                await self._queue.fail(job, NoResultsError(f"No results for {job.cache_key}"))
            else:
                await self._queue.complete(job, [], outcome=NO_RESULTS_OUTCOME)
            return

        payload = [item.model_dump() for item in items]
        await self._queue.report_progress(job, 90)
        await self._cache.set(job.cache_key, payload)
        await self._queue.complete(job, payload)

    async def _cancel_if_requested(self, job: Job) -> bool:
        current = await self._queue.get(job.id)
        if current is None or not current.cancel_requested:
            return False
        if await self._queue.finish_cancelled(job):
            logger.info("Job cancelled during processing", extra={"job_id": job.id})
        return True

    async def _release_lock_if_finished(self, job: Job) -> None:
        try:
            current = await self._queue.get(job.id)
            if current is not None and current.state not in (JobState.WAITING, JobState.ACTIVE):
                await self._lock.release_if_held(job.cache_key, job.id)
        except StoreUnavailableError as exc:
            # The lock expires on its own
            logger.warning(
                "Failed to release refresh lock",
                extra={"job_id": job.id, "error": str(exc)},
            )
