from clipscout.jobs.retention import sweep_retention
from clipscout.main.config import get_settings
from clipscout.main.container import Container
from clipscout.main.logging import get_logger
from clipscout.worker.worker import Worker

logger = get_logger(__name__)

worker = Worker()


def stalled_check_seconds(interval_seconds: int) -> set[int]:
    """Seconds of each minute at which the stalled-job check runs."""
    return set(range(0, 60, interval_seconds))


@worker.cron_job(second=stalled_check_seconds(get_settings().stalled_check_interval_seconds))
async def reclaim_stalled_jobs(container: Container):
    """Requeue or fail jobs whose lease ran out without being renewed."""
    results = {"requeued": 0, "failed": 0, "errors": [], "success": True}
    try:
        outcomes = await container.job_queue().reclaim_stalled()
        for _, outcome in outcomes:
            results[outcome] += 1
    except Exception as e:
        error_msg = f"Failed to reclaim stalled jobs: {str(e)}"
        logger.error(error_msg, exc_info=True)
        results["errors"].append(error_msg)
        results["success"] = False
    return results


@worker.cron_job()  # Every minute
async def sweep_job_retention(container: Container):
    return await sweep_retention(container.job_queue(), container.retention_policies())


@worker.cron_job(minute=5, second=0)  # Hourly at :05
async def prune_cache_usage_index(container: Container):
    """Drop search counters whose cache entry has expired."""
    results = {"pruned": 0, "errors": [], "success": True}
    try:
        results["pruned"] = await container.search_cache().prune_usage_index()
        if results["pruned"]:
            logger.info(f"Pruned {results['pruned']} stale usage counters")
    except Exception as e:
        error_msg = f"Failed to prune usage index: {str(e)}"
        logger.error(error_msg, exc_info=True)
        results["errors"].append(error_msg)
        results["success"] = False
    return results


@worker.cron_job(minute=30, second=0)  # Hourly at :30
async def refresh_popular_searches(container: Container):
    """Keep the most searched entries warm before they expire."""
    settings = get_settings()
    if not settings.popular_refresh_enabled:
        return {"found": 0, "queued": 0, "skipped": 0, "errors": [], "success": True}

    return await container.search_service().refresh_popular(
        min_search_count=settings.popular_min_search_count,
        limit=settings.popular_refresh_limit,
        spacing_seconds=settings.popular_refresh_spacing_seconds,
    )
