"""Single-process implementation of the shared atomic store.

Used for local development and tests. Every coroutine runs to completion
without awaiting, so each call is atomic with respect to other tasks on the
event loop, matching the guarantees of the Lua-backed Redis store.
"""

from __future__ import annotations

import bisect
import math
import time
from typing import Any, Callable, Mapping, Sequence


class _SortedSet:
    """Member -> score map kept ordered by ``(score, member)``."""

    __slots__ = ("scores", "order")

    def __init__(self):
        self.scores: dict[str, float] = {}
        self.order: list[tuple[float, str]] = []

    def add(self, member: str, score: float) -> bool:
        is_new = member not in self.scores
        if not is_new:
            self.remove(member)
        self.scores[member] = score
        bisect.insort(self.order, (score, member))
        return is_new

    def remove(self, member: str) -> bool:
        score = self.scores.pop(member, None)
        if score is None:
            return False
        index = bisect.bisect_left(self.order, (score, member))
        del self.order[index]
        return True

    def rank(self, member: str) -> int | None:
        score = self.scores.get(member)
        if score is None:
            return None
        return bisect.bisect_left(self.order, (score, member))

    def between(self, min_score: float, max_score: float) -> list[tuple[float, str]]:
        return [row for row in self.order if min_score <= row[0] <= max_score]

    def __len__(self) -> int:
        return len(self.scores)


class MemoryAtomicStore:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, Any] = {}
        self._expires_at: dict[str, float] = {}

    # Internal helpers ----------------------------------------------------
    def _alive(self, key: str) -> bool:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            self._expires_at.pop(key, None)
        return key in self._data

    def _value(self, key: str, kind: type, create: bool = False):
        if self._alive(key):
            value = self._data[key]
            if not isinstance(value, kind):
                raise TypeError(f"Key {key} holds {type(value).__name__}, not {kind.__name__}")
            return value
        if not create:
            return None
        value = kind()
        self._data[key] = value
        return value

    def _drop_if_empty(self, key: str) -> None:
        value = self._data.get(key)
        if value is not None and not isinstance(value, str) and len(value) == 0:
            self._data.pop(key, None)
            self._expires_at.pop(key, None)

    def _set_ttl(self, key: str, ttl_seconds: int | None) -> None:
        if ttl_seconds and ttl_seconds > 0:
            self._expires_at[key] = self._clock() + ttl_seconds
        else:
            self._expires_at.pop(key, None)

    def sweep_expired(self) -> int:
        """Drop every expired key, mirroring Redis' active expiry."""
        expired = [key for key in list(self._expires_at) if not self._alive(key)]
        return len(expired)

    # Plain keys ----------------------------------------------------------
    async def get(self, key: str) -> str | None:
        return self._value(key, str)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._data[key] = str(value)
        self._set_ttl(key, ttl_seconds)

    async def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str,
        ttl_seconds: int | None = None,
    ) -> bool:
        if self._value(key, str) != expected:
            return False
        await self.set(key, value, ttl_seconds)
        return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        if self._value(key, str) != expected:
            return False
        return await self.delete(key) == 1

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._alive(key):
                deleted += 1
            self._data.pop(key, None)
            self._expires_at.pop(key, None)
        return deleted

    async def exists(self, key: str) -> bool:
        return self._alive(key)

    async def ttl(self, key: str) -> int | None:
        if not self._alive(key) or key not in self._expires_at:
            return None
        return max(0, math.ceil(self._expires_at[key] - self._clock()))

    async def incr_with_expiry(self, key: str, window_seconds: int) -> tuple[int, int]:
        current = self._value(key, str)
        count = int(current or 0) + 1
        self._data[key] = str(count)
        if count == 1 or key not in self._expires_at:
            self._set_ttl(key, window_seconds)
        return count, await self.ttl(key) or window_seconds

    # Hashes --------------------------------------------------------------
    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._value(key, dict) or {})

    async def replace_hash(
        self, key: str, mapping: Mapping[str, str], ttl_seconds: int | None = None
    ) -> None:
        self._data[key] = {str(k): str(v) for k, v in mapping.items()}
        self._set_ttl(key, ttl_seconds)

    async def touch_hash(
        self, key: str, incr_field: str, amount: int, fields: Mapping[str, str]
    ) -> bool:
        value = self._value(key, dict)
        if value is None:
            return False
        value[incr_field] = str(int(value.get(incr_field, 0)) + amount)
        value.update({str(k): str(v) for k, v in fields.items()})
        return True

    # Sorted sets ---------------------------------------------------------
    async def zadd(self, key: str, member: str, score: float, nx: bool = False) -> bool:
        zset = self._value(key, _SortedSet, create=True)
        if nx and member in zset.scores:
            return False
        return zset.add(member, float(score))

    async def zincrby(self, key: str, member: str, amount: float) -> float:
        zset = self._value(key, _SortedSet, create=True)
        score = zset.scores.get(member, 0.0) + amount
        zset.add(member, score)
        return score

    async def zrem(self, key: str, *members: str) -> int:
        zset = self._value(key, _SortedSet)
        if zset is None:
            return 0
        removed = sum(1 for member in members if zset.remove(member))
        self._drop_if_empty(key)
        return removed

    async def zscore(self, key: str, member: str) -> float | None:
        zset = self._value(key, _SortedSet)
        return zset.scores.get(member) if zset is not None else None

    async def zrank(self, key: str, member: str) -> int | None:
        zset = self._value(key, _SortedSet)
        return zset.rank(member) if zset is not None else None

    async def zcard(self, key: str) -> int:
        zset = self._value(key, _SortedSet)
        return len(zset) if zset is not None else 0

    async def zrange_by_score(
        self,
        key: str,
        min_score: float,
        max_score: float,
        offset: int = 0,
        count: int | None = None,
    ) -> list[str]:
        zset = self._value(key, _SortedSet)
        if zset is None:
            return []
        rows = zset.between(min_score, max_score)[offset:]
        if count is not None:
            rows = rows[:count]
        return [member for _, member in rows]

    async def zrevrange_by_score(
        self,
        key: str,
        max_score: float,
        min_score: float,
        offset: int = 0,
        count: int | None = None,
    ) -> list[tuple[str, float]]:
        zset = self._value(key, _SortedSet)
        if zset is None:
            return []
        rows = list(reversed(zset.between(min_score, max_score)))[offset:]
        if count is not None:
            rows = rows[:count]
        return [(member, score) for score, member in rows]

    async def zrange_by_rank(
        self, key: str, start: int, stop: int, desc: bool = False
    ) -> list[str]:
        zset = self._value(key, _SortedSet)
        if zset is None:
            return []
        members = [member for _, member in zset.order]
        if desc:
            members.reverse()
        size = len(members)
        if start < 0:
            start = max(0, size + start)
        if stop < 0:
            stop = size + stop
        return members[start:stop + 1]

    # Sets ----------------------------------------------------------------
    async def sadd(self, key: str, *members: str) -> int:
        value = self._value(key, set, create=True)
        added = len(set(members) - value)
        value.update(members)
        return added

    async def srem(self, key: str, *members: str) -> int:
        value = self._value(key, set)
        if value is None:
            return 0
        removed = len(value & set(members))
        value.difference_update(members)
        self._drop_if_empty(key)
        return removed

    async def smembers(self, key: str) -> set[str]:
        return set(self._value(key, set) or set())

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
        job = self._value(job_key, dict, create=True)
        job.update({str(k): str(v) for k, v in fields.items()})
        await self.zadd(waiting_key, job_id, int(score))
        await self.sadd(index_key, job_id)

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
        for waiting_key in waiting_keys:
            while True:
                ready = await self.zrange_by_score(waiting_key, float("-inf"), now_ms, 0, 1)
                if not ready:
                    break
                job_id = ready[0]
                await self.zrem(waiting_key, job_id)
                job = self._value(job_key_prefix + job_id, dict)
                if job is None or job.get("state") != "waiting":
                    continue
                job.update(
                    state="active",
                    lease_token=token,
                    worker_id=worker_id,
                    lease_until=str(lease_until_ms),
                    started_at=str(now_ms),
                )
                await self.zadd(active_key, job_id, lease_until_ms)
                return job_id
        return None

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
        job = self._value(job_key, dict)
        if job is None or job.get("state") not in expected_states:
            return False
        if expected_token and job.get("lease_token") != expected_token:
            return False
        job.update({str(k): str(v) for k, v in fields.items()})
        for field, amount in (increments or {}).items():
            job[field] = str(int(job.get(field, 0)) + amount)
        if src_key:
            await self.zrem(src_key, job_id)
        if dst_key:
            await self.zadd(dst_key, job_id, int(dst_score or 0))
        if index_key:
            await self.srem(index_key, job_id)
        if ttl_seconds:
            self._set_ttl(job_key, ttl_seconds)
        return True

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
        outcomes: list[tuple[str, str]] = []
        for job_id in await self.zrange_by_score(active_key, float("-inf"), now_ms):
            job_key = job_key_prefix + job_id
            job = self._value(job_key, dict)
            if job is None or job.get("state") != "active":
                await self.zrem(active_key, job_id)
                continue
            if int(job.get("lease_until", 0)) > now_ms:
                continue
            await self.zrem(active_key, job_id)
            stalled = int(job.get("stalled_count", 0)) + 1
            job["stalled_count"] = str(stalled)
            if stalled > max_stalled:
                job.update(
                    state="failed",
                    error_code="STALLED",
                    error_message="job stalled more than allowable limit",
                    finished_at=str(now_ms),
                    lease_token="",
                )
                await self.zadd(failed_key, job_id, now_ms)
                await self.srem(index_key_prefix + job.get("cache_key", ""), job_id)
                self._set_ttl(job_key, failed_ttl_seconds)
                outcomes.append((job_id, "failed"))
            else:
                job.update(state="waiting", lease_token="", worker_id="", ready_at=str(now_ms))
                await self.zadd(waiting_key_prefix + job.get("priority", "1"), job_id, now_ms)
                outcomes.append((job_id, "requeued"))
        return outcomes

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()
        self._expires_at.clear()
