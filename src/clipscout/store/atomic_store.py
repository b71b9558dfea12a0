"""Contract for the shared store behind the cache, locks, counters and queue.

Every method is a single atomic operation from the point of view of other
processes. Multi-step queue mutations (claim, state transition, stalled
reclaim) are exposed as dedicated primitives so callers never perform a
read-modify-write across two round trips.
"""

from __future__ import annotations

from typing import Mapping, Protocol, Sequence


class AtomicStore(Protocol):
    # Plain keys ----------------------------------------------------------
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    async def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Set ``key`` to ``value`` only if it currently holds ``expected``.

        ``expected=None`` means the key must be absent.
        """
        ...

    async def compare_and_delete(self, key: str, expected: str) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> int | None:
        """Remaining lifetime in seconds, ``None`` if missing or persistent."""
        ...

    async def incr_with_expiry(self, key: str, window_seconds: int) -> tuple[int, int]:
        """Increment a counter, starting its window on the first increment.

        Returns the new count and the seconds left in the window.
        """
        ...

    # Hashes --------------------------------------------------------------
    async def hgetall(self, key: str) -> dict[str, str]: ...

    async def replace_hash(
        self, key: str, mapping: Mapping[str, str], ttl_seconds: int | None = None
    ) -> None: ...

    async def touch_hash(
        self, key: str, incr_field: str, amount: int, fields: Mapping[str, str]
    ) -> bool:
        """Increment a counter field and set ``fields`` if the hash exists."""
        ...

    # Sorted sets ---------------------------------------------------------
    async def zadd(self, key: str, member: str, score: float, nx: bool = False) -> bool: ...

    async def zincrby(self, key: str, member: str, amount: float) -> float: ...

    async def zrem(self, key: str, *members: str) -> int: ...

    async def zscore(self, key: str, member: str) -> float | None: ...

    async def zrank(self, key: str, member: str) -> int | None: ...

    async def zcard(self, key: str) -> int: ...

    async def zrange_by_score(
        self,
        key: str,
        min_score: float,
        max_score: float,
        offset: int = 0,
        count: int | None = None,
    ) -> list[str]: ...

    async def zrevrange_by_score(
        self,
        key: str,
        max_score: float,
        min_score: float,
        offset: int = 0,
        count: int | None = None,
    ) -> list[tuple[str, float]]: ...

    async def zrange_by_rank(
        self, key: str, start: int, stop: int, desc: bool = False
    ) -> list[str]: ...

    # Sets ----------------------------------------------------------------
    async def sadd(self, key: str, *members: str) -> int: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> set[str]: ...

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
    ) -> None: ...

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
        """Move the first ready job of the highest priority to active."""
        ...

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
        """Compare-and-swap a job's state and move it between queue sets."""
        ...

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
        """Requeue or fail active jobs whose lease expired.

        Returns ``(job_id, "requeued" | "failed")`` pairs.
        """
        ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
