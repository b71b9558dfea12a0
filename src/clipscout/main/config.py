import logging
import os
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="allow")

    # Shared store
    store_backend: str = "redis"  # "redis" or "memory"
    key_prefix: str = "clipscout"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: Optional[int] = None
    redis_conn_timeout: int = 5
    redis_conn_retries: int = 5
    redis_conn_retry_delay: int = 1
    redis_retry_on_timeout: bool = True
    redis_max_connections: Optional[int] = None
    redis_socket_keepalive: bool = True
    redis_health_check_interval: int = 30

    # Cache
    cache_ttl_seconds: int = 60 * 60 * 12  # L2 entries live 12 hours
    cache_l1_max_entries: int = 10_000
    cache_l1_ttl_seconds: int = 60  # bounds how long another process can serve a replaced entry

    # Job queue
    job_max_attempts: int = 2
    job_backoff_initial_seconds: float = 5.0
    job_backoff_multiplier: float = 2.0
    job_backoff_max_seconds: float = 60.0
    job_lease_seconds: int = 300
    job_lease_renew_seconds: int = 100
    stalled_check_interval_seconds: int = 30
    max_stalled_count: int = 2
    completed_retention_count: int = 100
    completed_retention_seconds: int = 60 * 60
    failed_retention_count: int = 500
    failed_retention_seconds: int = 60 * 60 * 24

    # Worker pool
    worker_concurrency: int = 50
    worker_poll_interval_seconds: float = 1.0
    worker_health_ttl_seconds: int = 60
    worker_shutdown_grace_seconds: float = 30.0
    external_calls_per_second: int = 100
    max_results_per_search: int = 100

    # External run poller
    actor_poll_initial_seconds: float = 0.5
    actor_poll_multiplier: float = 2.0
    actor_poll_max_seconds: float = 5.0
    actor_poll_max_attempts: int = 120
    actor_run_timeout_seconds: int = 240

    # Scrape providers
    scrape_server_url: Optional[str] = None
    scrape_server_api_key: Optional[str] = None
    scrape_server_timeout_seconds: int = 120
    actor_api_base_url: str = "https://api.apify.com/v2"
    actor_api_token: Optional[str] = None
    actor_ids: dict[str, str] = Field(
        default_factory=lambda: {
            "tiktok": "apidojo~tiktok-scraper",
            "douyin": "natanielsantos~douyin-scraper",
            "xiaohongshu": "easyapi~rednote-xiaohongshu-search-scraper",
            "youtube": "api-ninja~youtube-search-scraper",
        }
    )
    ranking_strategies: list[str] = Field(
        default_factory=lambda: ["relevance", "most_liked", "latest"]
    )

    # Recrawl
    recrawl_enabled: bool = True
    recrawl_rate_limit_per_window: int = 3
    recrawl_rate_window_seconds: int = 60 * 60
    recrawl_lock_ttl_seconds: int = 300
    recrawl_fail_open: bool = False

    # Popular refresh
    popular_refresh_enabled: bool = False
    popular_min_search_count: int = 5
    popular_refresh_limit: int = 50
    popular_refresh_spacing_seconds: float = 0.5

    @model_validator(mode="after")
    def validate_worker_settings(self):
        """Ensure queue and worker configuration values are sane."""
        if self.store_backend not in {"redis", "memory"}:
            raise ValueError(
                f"store_backend must be 'redis' or 'memory', got {self.store_backend!r}"
            )
        if self.job_max_attempts <= 0:
            raise ValueError(
                f"job_max_attempts must be positive, got {self.job_max_attempts}"
            )
        if self.worker_concurrency <= 0:
            raise ValueError(
                f"worker_concurrency must be positive, got {self.worker_concurrency}"
            )
        if self.job_lease_renew_seconds >= self.job_lease_seconds:
            raise ValueError(
                "job_lease_renew_seconds (%s) must be lower than job_lease_seconds (%s)"
                % (self.job_lease_renew_seconds, self.job_lease_seconds)
            )
        if self.cache_l1_max_entries < 0:
            raise ValueError("cache_l1_max_entries cannot be negative")
        if self.cache_l1_ttl_seconds <= 0:
            raise ValueError(
                f"cache_l1_ttl_seconds must be positive, got {self.cache_l1_ttl_seconds}"
            )
        interval = self.stalled_check_interval_seconds
        if not 0 < interval <= 60 or 60 % interval:
            raise ValueError(
                "stalled_check_interval_seconds must divide 60, got %s"
                % interval
            )
        return self


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get settings singleton, creating it if needed.

    Returns:
        Settings: The application settings instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Override settings (primarily for testing).

    Args:
        settings: The Settings instance to use.
    """
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Reset settings to None (for test cleanup)."""
    global _settings
    _settings = None


def get_loglevel():
    loglevel = os.getenv("LOGLEVEL", "INFO")

    match loglevel:
        case "INFO":
            return logging.INFO
        case "WARNING":
            return logging.WARNING
        case "ERROR":
            return logging.ERROR
        case "CRITICAL":
            return logging.CRITICAL
        case "DEBUG":
            return logging.DEBUG
        case _:
            return logging.INFO
