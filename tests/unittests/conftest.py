from dataclasses import dataclass

import pytest

from clipscout.cache.memory_cache import BoundedMemoryCache
from clipscout.cache.search_cache import SearchCache
from clipscout.coordination.lock import RefreshLock
from clipscout.coordination.rate_limiter import RateLimiter
from clipscout.jobs.job_queue import JobQueue
from clipscout.jobs.status_reader import JobStatusReader
from clipscout.main.config import Settings, reset_settings
from clipscout.recrawl.recrawl_service import RecrawlCoordinator
from clipscout.scraping.scrape_models import ResultItem, ScrapeRequest
from clipscout.search.search_service import SearchService
from clipscout.store.keys import StoreKeys
from clipscout.store.memory_store import MemoryAtomicStore
from clipscout.worker.backoff import BackoffPolicy
from clipscout.worker.worker_pool import ScrapeWorkerPool


class FakeClock:
    """Wall clock under test control, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeScrapeOperation:
    """Scripted scrape operation.

    Each call pops the next outcome: a list of raw items to return or an
    exception to raise. The last outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [[{"id": "v1", "title": "first"}]]
        self.requests: list[ScrapeRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def fetch(self, request: ScrapeRequest) -> list[ResultItem]:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return [ResultItem.from_raw(raw) for raw in outcome]


@dataclass
class Pipeline:
    clock: FakeClock
    store: MemoryAtomicStore
    keys: StoreKeys
    cache: SearchCache
    queue: JobQueue
    lock: RefreshLock
    rate_limiter: RateLimiter
    recrawl: RecrawlCoordinator
    search: SearchService
    scraper: FakeScrapeOperation

    def worker_pool(self, scraper=None, worker_id: str = "worker-1") -> ScrapeWorkerPool:
        return ScrapeWorkerPool(
            self.queue,
            self.cache,
            scraper or self.scraper,
            self.lock,
            concurrency=2,
            poll_interval_seconds=0.01,
            lease_renew_seconds=100,
            max_results=100,
            store=self.store,
            keys=self.keys,
            worker_id=worker_id,
        )


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Explicit settings that do not depend on the environment or a .env file."""
    return Settings(
        store_backend="memory",
        key_prefix="clipscout-test",
        redis_host="localhost",
        redis_port=6379,
        scrape_server_url=None,
        actor_api_token="test-token",
        popular_refresh_enabled=False,
    )


@pytest.fixture(autouse=True)
def reset_settings_after_test():
    """Reset settings after each test to prevent state leakage."""
    yield
    reset_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryAtomicStore:
    return MemoryAtomicStore(clock=clock)


@pytest.fixture
def keys() -> StoreKeys:
    return StoreKeys(prefix="test")


@pytest.fixture
def retry_backoff() -> BackoffPolicy:
    return BackoffPolicy(initial=5.0, multiplier=2.0, max_delay=60.0, max_attempts=2)


@pytest.fixture
def cache(store, keys, clock) -> SearchCache:
    l1 = BoundedMemoryCache(max_entries=100, default_ttl_seconds=86400, clock=clock)
    return SearchCache(store, keys, l1, default_ttl_seconds=43200, clock=clock)


@pytest.fixture
def queue(store, keys, clock, retry_backoff) -> JobQueue:
    return JobQueue(
        store,
        keys,
        max_attempts=2,
        retry_backoff=retry_backoff,
        lease_seconds=300,
        max_stalled_count=2,
        completed_ttl_seconds=3600,
        failed_ttl_seconds=86400,
        clock=clock,
    )


@pytest.fixture
def scraper() -> FakeScrapeOperation:
    return FakeScrapeOperation(
        [
            {"id": "v1", "title": "cats one", "web_video_url": "https://example.com/v1"},
            {"id": "v2", "title": "cats two", "web_video_url": "https://example.com/v2"},
        ]
    )


@pytest.fixture
def pipeline(clock, store, keys, cache, queue, scraper) -> Pipeline:
    lock = RefreshLock(store, keys, ttl_seconds=300)
    rate_limiter = RateLimiter(store, fail_open=False)
    recrawl = RecrawlCoordinator(
        queue,
        cache,
        lock,
        rate_limiter,
        keys,
        enabled=True,
        rate_limit_per_window=3,
        rate_window_seconds=3600,
    )
    search = SearchService(cache, queue, JobStatusReader(queue), recrawl)
    return Pipeline(
        clock=clock,
        store=store,
        keys=keys,
        cache=cache,
        queue=queue,
        lock=lock,
        rate_limiter=rate_limiter,
        recrawl=recrawl,
        search=search,
        scraper=scraper,
    )


@pytest.fixture
def make_scraper():
    """Build a scripted scrape operation from outcomes."""
    return FakeScrapeOperation
