"""Key layout of the shared store."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class StoreKeys:
    prefix: str = "clipscout"

    # Cache
    def cache_entry(self, cache_key: str) -> str:
        return f"{self.prefix}:cache:entry:{cache_key}"

    def cache_usage(self) -> str:
        return f"{self.prefix}:cache:usage"

    # Queue
    def job_prefix(self) -> str:
        return f"{self.prefix}:job:"

    def job(self, job_id: str) -> str:
        return f"{self.job_prefix()}{job_id}"

    def waiting_prefix(self) -> str:
        return f"{self.prefix}:queue:waiting:"

    def waiting(self, priority: int) -> str:
        return f"{self.waiting_prefix()}{priority}"

    def active(self) -> str:
        return f"{self.prefix}:queue:active"

    def finished(self, state: str) -> str:
        return f"{self.prefix}:queue:{state}"

    def key_index_prefix(self) -> str:
        return f"{self.prefix}:queue:key:"

    def key_index(self, cache_key: str) -> str:
        return f"{self.key_index_prefix()}{cache_key}"

    # Coordination
    def recrawl_lock(self, cache_key: str) -> str:
        return f"{self.prefix}:recrawl:lock:{cache_key}"

    def recrawl_rate(self, scope: str) -> str:
        return f"{self.prefix}:recrawl:rate:{scope}"

    def throttle(self, window: int) -> str:
        return f"{self.prefix}:throttle:{window}"

    def worker_health(self) -> str:
        return f"{self.prefix}:worker:health-check"
