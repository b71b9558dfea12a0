from __future__ import annotations

import asyncio
from functools import wraps

from arq.cron import cron
from dependency_injector import providers

from clipscout.main.aiohttp_client import aiohttp_client
from clipscout.main.config import Settings, get_settings
from clipscout.main.container import Container
from clipscout.main.logging import get_logger
from clipscout.redis.connection import build_arq_redis_settings

logger = get_logger(__name__)


class Worker:
    """
    Maintenance worker hosting the scrape worker pool and its cron jobs.

    Attributes:
        functions (list): List of registered functions.
        cron_jobs (list): List of registered cron jobs.
        redis_settings (RedisSettings): Redis settings for the arq process.
        on_startup (callable): Function to call on startup.
        on_shutdown (callable): Function to call on shutdown.

    Methods:
        startup(ctx):
            Builds the container, starts the HTTP session and launches the
            scrape worker pool as a background task.

        shutdown(ctx):
            Stops the pool, waits for the task and closes shared resources.

        cron_job(**decorator_kwargs):
            Decorator to register a cron job receiving the container.

        include_subworker(sub_worker: Worker):
            Includes functions and cron jobs from a sub-worker.
    """

    def __init__(self):
        settings = get_settings()
        self.functions = []
        self.cron_jobs = []
        self.redis_settings = build_arq_redis_settings(settings)
        self.on_startup = self.startup
        self.on_shutdown = self.shutdown
        self.retry_jobs = False
        self.job_timeout = 10 * 60
        self.max_jobs = 10
        self.health_check_interval = 60  # seconds (default is 3600)

    @staticmethod
    def _create_container(settings: Settings) -> Container:
        return Container(settings=providers.Object(settings))

    async def startup(self, ctx):
        settings = get_settings()
        container = self._create_container(settings)
        ctx["container"] = container

        aiohttp_client.start()

        pool = container.worker_pool()
        ctx["worker_pool"] = pool
        ctx["worker_pool_task"] = asyncio.create_task(pool.run_forever())

        logger.info(
            "Started scrape worker pool background task",
            extra={
                "worker_id": pool.worker_id,
                "concurrency": settings.worker_concurrency,
                "store_backend": settings.store_backend,
            },
        )

    async def shutdown(self, ctx):
        if "worker_pool" in ctx:
            logger.info("Stopping scrape worker pool")
            await ctx["worker_pool"].stop()

        if "worker_pool_task" in ctx:
            task = ctx["worker_pool_task"]
            grace = get_settings().worker_shutdown_grace_seconds
            try:
                # Slots exit after their current job; shield keeps wait_for from cancelling it
                await asyncio.wait_for(asyncio.shield(task), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "Worker pool did not drain in time, cancelling in-flight jobs",
                    extra={"grace_seconds": grace},
                )
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass  # Expected on cancellation

        await aiohttp_client.stop()

        if "container" in ctx:
            await ctx["container"].store().close()

    def cron_job(self, **decorator_kwargs):
        def decorator(func):
            @wraps(func)
            async def wrapper(*args):
                ctx = args[0]
                logger.debug(f"Executing {func.__name__}")
                return await func(container=ctx["container"])

            self.cron_jobs.append(cron(wrapper, **decorator_kwargs))
            return wrapper

        return decorator

    def include_subworker(self, sub_worker: Worker):
        self.functions.extend(sub_worker.functions)
        self.cron_jobs.extend(sub_worker.cron_jobs)

        logger.debug(
            "Including cron jobs from subworker: %s",
            sub_worker.cron_jobs,
        )
