"""Advisory cleanup of finished jobs.

Nothing relies on this for correctness: finished job hashes also carry a
store TTL, and the sweep only keeps the finished-job indexes bounded.
"""

from __future__ import annotations

from dataclasses import dataclass

from clipscout.jobs.job_models import JobState
from clipscout.jobs.job_queue import JobQueue
from clipscout.main.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    state: JobState
    max_count: int
    max_age_seconds: int


async def sweep_retention(queue: JobQueue, policies: list[RetentionPolicy]) -> dict:
    """Trim each finished state; a failure in one state does not stop the rest."""
    results = {"deleted": {}, "errors": [], "success": True}

    for policy in policies:
        try:
            removed = await queue.trim_finished(
                policy.state, policy.max_count, policy.max_age_seconds
            )
            results["deleted"][policy.state.value] = removed
            if removed > 0:
                logger.info(
                    f"Deleted {removed} {policy.state.value} jobs past retention",
                    extra={"state": policy.state.value, "deleted": removed},
                )
        except Exception as e:
            error_msg = f"Failed to trim {policy.state.value} jobs: {str(e)}"
            logger.error(error_msg, exc_info=True)
            results["errors"].append(error_msg)
            results["success"] = False

    return results
