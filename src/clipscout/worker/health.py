from datetime import datetime, timezone
from typing import NamedTuple

from clipscout.main.exceptions import StoreUnavailableError
from clipscout.store.atomic_store import AtomicStore
from clipscout.store.keys import StoreKeys


class WorkerHealth(NamedTuple):
    status: str  # "HEALTHY", "UNHEALTHY", "UNKNOWN"
    last_heartbeat: str | None
    details: str | None


async def get_worker_health(store: AtomicStore, keys: StoreKeys) -> WorkerHealth:
    """
    Check whether a scrape worker pool is alive by looking for its heartbeat key.

    Returns:
        WorkerHealth: Contains status, last_heartbeat timestamp, and details
    """
    try:
        worker_health_data = await store.get(keys.worker_health())
    except StoreUnavailableError as e:
        return WorkerHealth(
            status="UNKNOWN",
            last_heartbeat=None,
            details=f"Store connection error: {str(e)}",
        )

    if worker_health_data:
        return WorkerHealth(
            status="HEALTHY",
            last_heartbeat=datetime.now(timezone.utc).isoformat(),
            details=worker_health_data,
        )
    return WorkerHealth(
        status="UNHEALTHY",
        last_heartbeat=None,
        details="Worker health check key not found or expired",
    )
