"""Capped exponential backoff shared by job retries and the external poller."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Delay schedule ``initial * multiplier^(attempt-1)``, capped at ``max_delay``.

    Args:
        initial: Delay before the first retry, in seconds.
        multiplier: Growth factor between attempts.
        max_delay: Upper bound for a single delay.
        max_attempts: Number of delays the schedule yields.
        jitter: Apply full jitter, ``random.uniform(0, delay)``.

    Examples:
        BackoffPolicy(0.5, 2, 5, 6).delays() -> 0.5, 1, 2, 4, 5, 5
    """

    initial: float
    multiplier: float
    max_delay: float
    max_attempts: int
    jitter: bool = False

    def delay_for(self, attempt: int) -> float:
        """Delay after ``attempt`` (1-indexed, where 1 = first retry)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        exp_delay = self.initial * (self.multiplier ** (attempt - 1))
        capped_delay = min(exp_delay, self.max_delay)
        if self.jitter:
            return random.uniform(0, capped_delay)
        return capped_delay

    def delays(self) -> Iterator[float]:
        for attempt in range(1, self.max_attempts + 1):
            yield self.delay_for(attempt)
