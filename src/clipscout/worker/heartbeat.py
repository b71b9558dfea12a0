"""Lease heartbeat for jobs that run longer than one renew interval.

While a job is processed its lease is renewed in the background. If a renew
is refused the lease has been reclaimed by another worker; the heartbeat
stops and ``lost`` is set so the worker can abandon the job instead of
writing a result it no longer owns.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from clipscout.jobs.job_models import Job
from clipscout.jobs.job_queue import JobQueue
from clipscout.main.exceptions import StoreUnavailableError
from clipscout.main.logging import get_logger

logger = get_logger(__name__)


class LeaseHeartbeat:
    """Renews the lease of one active job every ``interval_seconds``.

    Example:
        async with LeaseHeartbeat(queue, job, interval_seconds=100) as heartbeat:
            items = await scrape(...)
            if heartbeat.lost:
                return
    """

    def __init__(
        self,
        queue: JobQueue,
        job: Job,
        interval_seconds: float,
        max_failures: int = 3,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self._queue = queue
        self._job = job
        self._interval = interval_seconds
        self._max_failures = max_failures
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self._consecutive_failures = 0
        self.lost = False

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def beat(self) -> bool:
        """Renew once; returns False once the lease is gone."""
        try:
            renewed = await self._queue.renew_lease(self._job)
        except StoreUnavailableError as exc:
            self._consecutive_failures += 1
            logger.warning(
                "Lease renew failed",
                extra={
                    "job_id": self._job.id,
                    "consecutive_failures": self._consecutive_failures,
                    "max_failures": self._max_failures,
                    "error": str(exc),
                },
            )
            # The store may recover before the lease runs out
            return self._consecutive_failures < self._max_failures

        self._consecutive_failures = 0
        if not renewed:
            self.lost = True
            logger.warning("Lease lost during processing", extra={"job_id": self._job.id})
        return renewed

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval)
            if not await self.beat():
                self.lost = True
                return

    async def __aenter__(self) -> "LeaseHeartbeat":
        self._task = asyncio.create_task(self._run())
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
