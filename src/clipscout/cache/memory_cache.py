"""Process-local accelerator in front of the shared cache."""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable


@dataclass(slots=True)
class _LocalEntry:
    payload: list[dict[str, Any]]
    expires_at: float
    access_count: int = 0
    last_accessed_at: float | None = None


@dataclass(slots=True)
class BoundedMemoryCache:
    """Bounded in-process cache.

    When full, the entry created longest ago is evicted. Reads do not
    reorder entries, so this is not an LRU: the shared L2 store remains the
    source of truth and L1 only absorbs bursts within one process.
    """

    max_entries: int
    default_ttl_seconds: int
    clock: Callable[[], float] = time.time
    _entries: "OrderedDict[str, _LocalEntry]" = field(
        init=False, default_factory=OrderedDict, repr=False
    )

    def get(self, key: str) -> list[dict[str, Any]] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self.clock()
        if entry.expires_at <= now:
            self._entries.pop(key, None)
            return None
        entry.access_count += 1
        entry.last_accessed_at = now
        return entry.payload

    def set(
        self,
        key: str,
        payload: list[dict[str, Any]],
        expires_at: float | None = None,
    ) -> None:
        if self.max_entries <= 0:
            return
        now = self.clock()
        local_expiry = now + self.default_ttl_seconds
        if expires_at is not None:
            local_expiry = min(local_expiry, expires_at)

        # Replacing re-creates the entry, moving it to the young end
        self._entries.pop(key, None)
        self._entries[key] = _LocalEntry(payload=payload, expires_at=local_expiry)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
