"""Global ceiling on calls to the external scrape provider."""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Callable

from clipscout.main.exceptions import StoreUnavailableError
from clipscout.main.logging import get_logger
from clipscout.store.atomic_store import AtomicStore
from clipscout.store.keys import StoreKeys

logger = get_logger(__name__)


@dataclass(slots=True)
class ExternalCallThrottle:
    """Cross-process calls-per-second ceiling.

    Every call increments a counter for the current one-second window in the
    shared store; callers over the ceiling sleep until the next window. If
    the store is unreachable the circuit opens and a local per-process
    window with ``local_limit`` calls is used until it closes again.
    """

    store: AtomicStore
    keys: StoreKeys
    calls_per_second: int
    circuit_break_seconds: int = 30
    local_limit: int | None = None
    clock: Callable[[], float] = time.time
    sleep: Callable[[float], object] = asyncio.sleep
    _circuit_open_until: float = field(init=False, default=0.0, repr=False)
    _local_window: int = field(init=False, default=-1, repr=False)
    _local_count: int = field(init=False, default=0, repr=False)
    _lock: asyncio.Lock = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._lock = asyncio.Lock()
        if self.local_limit is None or self.local_limit <= 0:
            self.local_limit = self.calls_per_second
        if self.circuit_break_seconds <= 0:
            self.circuit_break_seconds = 30

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _is_circuit_open(self, now: float) -> bool:
        return bool(self._circuit_open_until and now < self._circuit_open_until)

    def _open_circuit(self, now: float) -> None:
        self._circuit_open_until = now + self.circuit_break_seconds

    async def _try_shared(self, window: int) -> bool:
        count, _ = await self.store.incr_with_expiry(self.keys.throttle(window), 2)
        return count <= self.calls_per_second

    async def _try_local(self, window: int) -> bool:
        async with self._lock:
            if window != self._local_window:
                self._local_window = window
                self._local_count = 0
            if self._local_count >= self.local_limit:
                return False
            self._local_count += 1
            return True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def acquire(self) -> None:
        """Wait until a call slot is available in the current second."""
        if self.calls_per_second <= 0:
            return

        while True:
            now = self.clock()
            window = int(now)

            if self._is_circuit_open(now):
                allowed = await self._try_local(window)
            else:
                try:
                    allowed = await self._try_shared(window)
                    self._circuit_open_until = 0.0
                except StoreUnavailableError as exc:
                    self._open_circuit(now)
                    logger.warning(
                        "Call throttle falling back to local window",
                        extra={
                            "error": str(exc),
                            "mode": "local_fallback",
                            "local_limit": self.local_limit,
                        },
                    )
                    allowed = await self._try_local(window)

            if allowed:
                return
            await self.sleep(max(0.01, math.floor(now) + 1 - now))
