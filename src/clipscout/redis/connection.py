"""Redis connections for the arq worker and the shared atomic store."""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis
from arq.connections import RedisSettings

from clipscout.main.config import Settings, get_settings


def build_arq_redis_settings(settings: Settings | None = None) -> RedisSettings:
    """Connection settings for the arq worker's own Redis pool."""
    cfg = settings or get_settings()
    return RedisSettings(
        host=cfg.redis_host,
        port=cfg.redis_port,
        database=cfg.redis_db or 0,
        conn_timeout=cfg.redis_conn_timeout,
        conn_retries=cfg.redis_conn_retries,
        conn_retry_delay=cfg.redis_conn_retry_delay,
        retry_on_timeout=cfg.redis_retry_on_timeout,
        max_connections=cfg.redis_max_connections,
    )


def build_redis_pool_kwargs(
    settings: Settings | None = None,
    *,
    decode_responses: bool,
) -> dict[str, Any]:
    cfg = settings or get_settings()
    kwargs: dict[str, Any] = dict(
        decode_responses=decode_responses,
        socket_connect_timeout=cfg.redis_conn_timeout,
        retry_on_timeout=cfg.redis_retry_on_timeout,
        socket_keepalive=cfg.redis_socket_keepalive,
        health_check_interval=cfg.redis_health_check_interval,
    )
    optional = {"max_connections": cfg.redis_max_connections, "db": cfg.redis_db}
    kwargs.update({name: value for name, value in optional.items() if value is not None})
    return kwargs


def create_redis_client(settings: Settings | None = None) -> aioredis.Redis:
    """Create a string-decoding Redis client for the shared store."""
    cfg = settings or get_settings()
    pool = aioredis.ConnectionPool.from_url(
        f"redis://{cfg.redis_host}:{cfg.redis_port}",
        **build_redis_pool_kwargs(cfg, decode_responses=True),
    )
    return aioredis.Redis(connection_pool=pool)
