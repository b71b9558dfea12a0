import random

import pytest

from clipscout.worker.backoff import BackoffPolicy


class TestBackoffPolicy:
    def test_delays_grow_exponentially_and_cap(self):
        policy = BackoffPolicy(initial=0.5, multiplier=2, max_delay=5, max_attempts=6)

        assert list(policy.delays()) == [0.5, 1, 2, 4, 5, 5]

    def test_first_retry_uses_initial_delay(self):
        policy = BackoffPolicy(initial=5, multiplier=2, max_delay=60, max_attempts=2)

        assert policy.delay_for(1) == 5
        assert policy.delay_for(2) == 10

    def test_attempt_must_be_positive(self):
        policy = BackoffPolicy(initial=5, multiplier=2, max_delay=60, max_attempts=2)

        with pytest.raises(ValueError):
            policy.delay_for(0)

    def test_full_jitter_stays_within_capped_delay(self):
        random.seed(42)
        policy = BackoffPolicy(initial=10, multiplier=2, max_delay=30, max_attempts=5, jitter=True)

        delays = [policy.delay_for(4) for _ in range(100)]

        assert all(0 <= d <= 30 for d in delays)
        assert len(set(round(d, 1) for d in delays)) > 1
