from dependency_injector import containers, providers

from clipscout.admin.admin_service import AdminService
from clipscout.cache.memory_cache import BoundedMemoryCache
from clipscout.cache.search_cache import SearchCache
from clipscout.coordination.call_throttle import ExternalCallThrottle
from clipscout.coordination.lock import RefreshLock
from clipscout.coordination.rate_limiter import RateLimiter
from clipscout.jobs.job_queue import JobQueue
from clipscout.jobs.retention import RetentionPolicy
from clipscout.jobs.job_models import JobState
from clipscout.jobs.status_reader import JobStatusReader
from clipscout.main.aiohttp_client import aiohttp_client
from clipscout.main.config import Settings
from clipscout.recrawl.recrawl_service import RecrawlCoordinator
from clipscout.redis.connection import create_redis_client
from clipscout.scraping.actor_client import ActorClient
from clipscout.scraping.multi_strategy import MultiStrategyScraper
from clipscout.scraping.scrape_server import FallbackScrapeOperation, ScrapeServerClient
from clipscout.search.search_service import SearchService
from clipscout.store.memory_store import MemoryAtomicStore
from clipscout.store.redis_store import RedisAtomicStore
from clipscout.store.keys import StoreKeys
from clipscout.worker.backoff import BackoffPolicy
from clipscout.worker.worker_pool import ScrapeWorkerPool


def build_atomic_store(settings: Settings):
    if settings.store_backend == "memory":
        return MemoryAtomicStore()
    return RedisAtomicStore(create_redis_client(settings))


def build_scrape_server(settings: Settings, throttle: ExternalCallThrottle):
    if not settings.scrape_server_url:
        return None
    return ScrapeServerClient(
        session_provider=aiohttp_client,
        base_url=settings.scrape_server_url,
        api_key=settings.scrape_server_api_key,
        timeout_seconds=settings.scrape_server_timeout_seconds,
        throttle=throttle,
    )


def build_retention_policies(settings: Settings) -> list[RetentionPolicy]:
    return [
        RetentionPolicy(
            JobState.COMPLETED,
            settings.completed_retention_count,
            settings.completed_retention_seconds,
        ),
        RetentionPolicy(
            JobState.CANCELLED,
            settings.completed_retention_count,
            settings.completed_retention_seconds,
        ),
        RetentionPolicy(
            JobState.FAILED,
            settings.failed_retention_count,
            settings.failed_retention_seconds,
        ),
    ]


class Container(containers.DeclarativeContainer):
    settings = providers.Dependency(instance_of=Settings)

    # Shared store
    keys = providers.Singleton(StoreKeys, prefix=settings.provided.key_prefix)
    store = providers.Singleton(build_atomic_store, settings=settings)

    # Cache
    l1_cache = providers.Singleton(
        BoundedMemoryCache,
        max_entries=settings.provided.cache_l1_max_entries,
        default_ttl_seconds=settings.provided.cache_l1_ttl_seconds,
    )
    search_cache = providers.Singleton(
        SearchCache,
        store=store,
        keys=keys,
        l1=l1_cache,
        default_ttl_seconds=settings.provided.cache_ttl_seconds,
    )

    # Coordination
    refresh_lock = providers.Singleton(
        RefreshLock,
        store=store,
        keys=keys,
        ttl_seconds=settings.provided.recrawl_lock_ttl_seconds,
    )
    rate_limiter = providers.Singleton(
        RateLimiter,
        store=store,
        fail_open=settings.provided.recrawl_fail_open,
    )
    call_throttle = providers.Singleton(
        ExternalCallThrottle,
        store=store,
        keys=keys,
        calls_per_second=settings.provided.external_calls_per_second,
    )

    # Queue
    retry_backoff = providers.Singleton(
        BackoffPolicy,
        initial=settings.provided.job_backoff_initial_seconds,
        multiplier=settings.provided.job_backoff_multiplier,
        max_delay=settings.provided.job_backoff_max_seconds,
        max_attempts=settings.provided.job_max_attempts,
    )
    job_queue = providers.Singleton(
        JobQueue,
        store=store,
        keys=keys,
        max_attempts=settings.provided.job_max_attempts,
        retry_backoff=retry_backoff,
        lease_seconds=settings.provided.job_lease_seconds,
        max_stalled_count=settings.provided.max_stalled_count,
        completed_ttl_seconds=settings.provided.completed_retention_seconds,
        failed_ttl_seconds=settings.provided.failed_retention_seconds,
    )
    status_reader = providers.Factory(JobStatusReader, queue=job_queue)
    retention_policies = providers.Singleton(build_retention_policies, settings=settings)

    # Scraping
    actor_poll_policy = providers.Singleton(
        BackoffPolicy,
        initial=settings.provided.actor_poll_initial_seconds,
        multiplier=settings.provided.actor_poll_multiplier,
        max_delay=settings.provided.actor_poll_max_seconds,
        max_attempts=settings.provided.actor_poll_max_attempts,
    )
    actor_client = providers.Singleton(
        ActorClient,
        session_provider=providers.Object(aiohttp_client),
        base_url=settings.provided.actor_api_base_url,
        token=settings.provided.actor_api_token,
        poll_policy=actor_poll_policy,
        run_timeout_seconds=settings.provided.actor_run_timeout_seconds,
        throttle=call_throttle,
    )
    multi_strategy_scraper = providers.Singleton(
        MultiStrategyScraper,
        client=actor_client,
        actor_ids=settings.provided.actor_ids,
        strategies=settings.provided.ranking_strategies,
    )
    scrape_server = providers.Singleton(
        build_scrape_server, settings=settings, throttle=call_throttle
    )
    scrape_operation = providers.Singleton(
        FallbackScrapeOperation,
        primary=scrape_server,
        secondary=multi_strategy_scraper,
    )

    # Services
    recrawl_coordinator = providers.Singleton(
        RecrawlCoordinator,
        queue=job_queue,
        cache=search_cache,
        lock=refresh_lock,
        rate_limiter=rate_limiter,
        keys=keys,
        enabled=settings.provided.recrawl_enabled,
        rate_limit_per_window=settings.provided.recrawl_rate_limit_per_window,
        rate_window_seconds=settings.provided.recrawl_rate_window_seconds,
    )
    search_service = providers.Singleton(
        SearchService,
        cache=search_cache,
        queue=job_queue,
        status_reader=status_reader,
        recrawl=recrawl_coordinator,
    )
    admin_service = providers.Factory(
        AdminService,
        queue=job_queue,
        cache=search_cache,
        recrawl=recrawl_coordinator,
    )

    # Worker
    worker_pool = providers.Singleton(
        ScrapeWorkerPool,
        queue=job_queue,
        cache=search_cache,
        scrape_operation=scrape_operation,
        lock=refresh_lock,
        concurrency=settings.provided.worker_concurrency,
        poll_interval_seconds=settings.provided.worker_poll_interval_seconds,
        lease_renew_seconds=settings.provided.job_lease_renew_seconds,
        max_results=settings.provided.max_results_per_search,
        store=store,
        keys=keys,
        health_ttl_seconds=settings.provided.worker_health_ttl_seconds,
    )
