"""Windowed rate limiting on top of the shared atomic counter."""

from __future__ import annotations

from dataclasses import dataclass

from clipscout.main.exceptions import StoreUnavailableError
from clipscout.main.logging import get_logger
from clipscout.store.atomic_store import AtomicStore

logger = get_logger(__name__)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    current_count: int
    max_requests: int
    window_seconds: int
    retry_after_seconds: int = 0
    degraded: bool = False

    @property
    def remaining(self) -> int:
        """Number of requests remaining in the current window."""
        return max(0, self.max_requests - self.current_count)

    def __bool__(self) -> bool:
        return self.allowed


class RateLimiter:
    """Fixed-window counter per key.

    The window starts with the first increment and the counter expires with
    it, so the state is shared by every process and needs no cleanup.

    Args:
        store: Shared atomic store.
        fail_open: When the store is unreachable, allow (True) or raise
            ``StoreUnavailableError`` (False).
    """

    def __init__(self, store: AtomicStore, fail_open: bool = False) -> None:
        self._store = store
        self._fail_open = fail_open

    async def check_and_increment(
        self,
        key: str,
        limit_per_window: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """Count one call against ``key`` and report whether it is allowed.

        The ``limit_per_window + 1``-th call inside a window is denied.
        """
        try:
            count, remaining = await self._store.incr_with_expiry(key, window_seconds)
        except StoreUnavailableError:
            if not self._fail_open:
                raise
            logger.warning(
                "Rate limiter unavailable, allowing request",
                extra={"rate_key": key, "mode": "fail_open"},
            )
            return RateLimitResult(
                allowed=True,
                current_count=0,
                max_requests=limit_per_window,
                window_seconds=window_seconds,
                degraded=True,
            )

        allowed = count <= limit_per_window
        if not allowed:
            logger.info(
                "Rate limit reached",
                extra={
                    "rate_key": key,
                    "current_count": count,
                    "max_requests": limit_per_window,
                    "retry_after_seconds": remaining,
                },
            )
        return RateLimitResult(
            allowed=allowed,
            current_count=count,
            max_requests=limit_per_window,
            window_seconds=window_seconds,
            retry_after_seconds=0 if allowed else remaining,
        )

    async def peek(self, key: str) -> tuple[int, int | None]:
        """Current count and seconds left in the window, without counting."""
        value = await self._store.get(key)
        return int(value or 0), await self._store.ttl(key)

    async def reset(self, key: str) -> bool:
        return await self._store.delete(key) == 1
