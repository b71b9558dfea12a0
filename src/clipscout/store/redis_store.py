"""Redis implementation of the shared atomic store."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Mapping, Sequence

import redis.asyncio as aioredis
import redis.exceptions

from clipscout.main.exceptions import StoreUnavailableError
from clipscout.main.logging import get_logger
from clipscout.store.lua_scripts import LuaScripts

logger = get_logger(__name__)


def _score_bound(value: float) -> str:
    if value == float("inf"):
        return "+inf"
    if value == float("-inf"):
        return "-inf"
    return repr(value)


class RedisAtomicStore:
    """Shared store backed by a string-decoding ``redis.asyncio`` client."""

    def __init__(self, redis_client: aioredis.Redis):
        self._redis = redis_client

    @property
    def redis(self) -> aioredis.Redis:
        return self._redis

    @asynccontextmanager
    async def _guard(self):
        try:
            yield
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as exc:
            logger.warning(
                "Shared store unreachable",
                extra={"error": str(exc), "error_code": "STORE_UNAVAILABLE"},
            )
            raise StoreUnavailableError(exc) from exc

    async def _run(self, script: str, keys: list[str], args: list) -> object:
        async with self._guard():
            return await LuaScripts.run(self._redis, script, keys, args)

    # Plain keys ----------------------------------------------------------
    async def get(self, key: str) -> str | None:
        async with self._guard():
            return await self._redis.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        async with self._guard():
            await self._redis.set(key, value, ex=ttl_seconds or None)

    async def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str,
        ttl_seconds: int | None = None,
    ) -> bool:
        if expected is None:
            async with self._guard():
                return bool(
                    await self._redis.set(key, value, nx=True, ex=ttl_seconds or None)
                )
        result = await self._run(
            LuaScripts.COMPARE_AND_SET,
            [key],
            ["0", expected, value, ttl_seconds or 0],
        )
        return result == 1

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        result = await self._run(LuaScripts.COMPARE_AND_DELETE, [key], [expected])
        return result == 1

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        async with self._guard():
            return int(await self._redis.delete(*keys))

    async def exists(self, key: str) -> bool:
        async with self._guard():
            return bool(await self._redis.exists(key))

    async def ttl(self, key: str) -> int | None:
        async with self._guard():
            remaining = await self._redis.ttl(key)
        return int(remaining) if remaining is not None and remaining >= 0 else None

    async def incr_with_expiry(self, key: str, window_seconds: int) -> tuple[int, int]:
        count, remaining = await self._run(
            LuaScripts.INCR_WITH_EXPIRY, [key], [window_seconds]
        )
        return int(count), int(remaining)

    # Hashes --------------------------------------------------------------
    async def hgetall(self, key: str) -> dict[str, str]:
        async with self._guard():
            return dict(await self._redis.hgetall(key))

    async def replace_hash(
        self, key: str, mapping: Mapping[str, str], ttl_seconds: int | None = None
    ) -> None:
        await self._run(
            LuaScripts.REPLACE_HASH,
            [key],
            [ttl_seconds or 0, *LuaScripts.flatten(mapping)],
        )

    async def touch_hash(
        self, key: str, incr_field: str, amount: int, fields: Mapping[str, str]
    ) -> bool:
        result = await self._run(
            LuaScripts.TOUCH_HASH,
            [key],
            [incr_field, amount, *LuaScripts.flatten(fields)],
        )
        return result == 1

    # Sorted sets ---------------------------------------------------------
    async def zadd(self, key: str, member: str, score: float, nx: bool = False) -> bool:
        async with self._guard():
            return bool(await self._redis.zadd(key, {member: score}, nx=nx))

    async def zincrby(self, key: str, member: str, amount: float) -> float:
        async with self._guard():
            return float(await self._redis.zincrby(key, amount, member))

    async def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        async with self._guard():
            return int(await self._redis.zrem(key, *members))

    async def zscore(self, key: str, member: str) -> float | None:
        async with self._guard():
            score = await self._redis.zscore(key, member)
        return float(score) if score is not None else None

    async def zrank(self, key: str, member: str) -> int | None:
        async with self._guard():
            return await self._redis.zrank(key, member)

    async def zcard(self, key: str) -> int:
        async with self._guard():
            return int(await self._redis.zcard(key))

    async def zrange_by_score(
        self,
        key: str,
        min_score: float,
        max_score: float,
        offset: int = 0,
        count: int | None = None,
    ) -> list[str]:
        kwargs = {}
        if count is not None:
            kwargs = {"start": offset, "num": count}
        async with self._guard():
            return list(
                await self._redis.zrangebyscore(
                    key, _score_bound(min_score), _score_bound(max_score), **kwargs
                )
            )

    async def zrevrange_by_score(
        self,
        key: str,
        max_score: float,
        min_score: float,
        offset: int = 0,
        count: int | None = None,
    ) -> list[tuple[str, float]]:
        kwargs = {}
        if count is not None:
            kwargs = {"start": offset, "num": count}
        async with self._guard():
            rows = await self._redis.zrevrangebyscore(
                key,
                _score_bound(max_score),
                _score_bound(min_score),
                withscores=True,
                **kwargs,
            )
        return [(member, float(score)) for member, score in rows]

    async def zrange_by_rank(
        self, key: str, start: int, stop: int, desc: bool = False
    ) -> list[str]:
        async with self._guard():
            return list(await self._redis.zrange(key, start, stop, desc=desc))

    # Sets ----------------------------------------------------------------
    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        async with self._guard():
            return int(await self._redis.sadd(key, *members))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        async with self._guard():
            return int(await self._redis.srem(key, *members))

    async def smembers(self, key: str) -> set[str]:
        async with self._guard():
            return set(await self._redis.smembers(key))

    # Queue primitives ----------------------------------------------------
    async def add_job(
        self,
        *,
        job_key: str,
        job_id: str,
        fields: Mapping[str, str],
        waiting_key: str,
        score: float,
        index_key: str,
    ) -> None:
        await self._run(
            LuaScripts.ADD_JOB,
            [job_key, waiting_key, index_key],
            [job_id, int(score), *LuaScripts.flatten(fields)],
        )

    async def claim_next(
        self,
        *,
        waiting_keys: Sequence[str],
        active_key: str,
        job_key_prefix: str,
        now_ms: int,
        lease_until_ms: int,
        token: str,
        worker_id: str,
    ) -> str | None:
        result = await self._run(
            LuaScripts.CLAIM_NEXT,
            [active_key, *waiting_keys],
            [now_ms, lease_until_ms, token, worker_id, job_key_prefix],
        )
        return result or None

    async def transition(
        self,
        *,
        job_key: str,
        job_id: str,
        expected_states: Sequence[str],
        expected_token: str | None,
        fields: Mapping[str, str],
        increments: Mapping[str, int] | None = None,
        src_key: str | None = None,
        dst_key: str | None = None,
        dst_score: float | None = None,
        index_key: str | None = None,
        ttl_seconds: int | None = None,
    ) -> bool:
        keys = [job_key, src_key or job_key, dst_key or job_key, index_key or job_key]
        args = [
            job_id,
            ",".join(expected_states),
            expected_token or "",
            "1" if src_key else "0",
            "1" if dst_key else "0",
            int(dst_score or 0),
            "1" if index_key else "0",
            ttl_seconds or 0,
            json.dumps({k: str(v) for k, v in fields.items()}),
            json.dumps(dict(increments or {})),
        ]
        return await self._run(LuaScripts.TRANSITION, keys, args) == 1

    async def reclaim_stalled(
        self,
        *,
        active_key: str,
        failed_key: str,
        job_key_prefix: str,
        waiting_key_prefix: str,
        index_key_prefix: str,
        now_ms: int,
        max_stalled: int,
        failed_ttl_seconds: int,
    ) -> list[tuple[str, str]]:
        flat = await self._run(
            LuaScripts.RECLAIM_STALLED,
            [active_key, failed_key],
            [
                now_ms,
                max_stalled,
                job_key_prefix,
                waiting_key_prefix,
                index_key_prefix,
                failed_ttl_seconds,
            ],
        )
        flat = list(flat or [])
        return list(zip(flat[0::2], flat[1::2]))

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except redis.exceptions.RedisError as exc:
            logger.warning("Shared store ping failed", extra={"error": str(exc)})
            return False

    async def close(self) -> None:
        await self._redis.aclose()
