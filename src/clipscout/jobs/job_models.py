from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from clipscout.cache.cache_key import CacheKey


class JobKind(str, Enum):
    NORMAL = "normal"
    RECRAWL = "recrawl"
    AUTO_REFRESH = "auto-refresh"

    @property
    def priority(self) -> int:
        """Lower runs first."""
        return _PRIORITIES[self]


_PRIORITIES = {
    JobKind.RECRAWL: 0,
    JobKind.NORMAL: 1,
    JobKind.AUTO_REFRESH: 2,
}

PRIORITY_ORDER = sorted(set(_PRIORITIES.values()))


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})


def _ms_to_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class Job(BaseModel):
    id: str
    platform: str
    query: str
    date_range: str
    kind: JobKind
    state: JobState
    priority: int
    progress: int = 0
    attempts_made: int = 0
    max_attempts: int = 1
    stalled_count: int = 0
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    lease_until: Optional[datetime] = None
    lease_token: Optional[str] = None
    worker_id: Optional[str] = None
    result: Optional[list[dict[str, Any]]] = None
    outcome: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    cancel_requested: bool = False

    @property
    def cache_key(self) -> CacheKey:
        return CacheKey(
            platform=self.platform, query=self.query, date_range=self.date_range
        )

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made + 1 >= self.max_attempts

    @classmethod
    def from_hash(cls, raw: dict[str, str]) -> "Job":
        result = raw.get("result")
        return cls(
            id=raw["id"],
            platform=raw["platform"],
            query=raw["query"],
            date_range=raw["date_range"],
            kind=JobKind(raw["kind"]),
            state=JobState(raw["state"]),
            priority=int(raw["priority"]),
            progress=int(raw.get("progress") or 0),
            attempts_made=int(raw.get("attempts_made") or 0),
            max_attempts=int(raw.get("max_attempts") or 1),
            stalled_count=int(raw.get("stalled_count") or 0),
            created_at=_ms_to_datetime(raw["created_at"]),
            started_at=_ms_to_datetime(raw.get("started_at")),
            finished_at=_ms_to_datetime(raw.get("finished_at")),
            ready_at=_ms_to_datetime(raw.get("ready_at")),
            lease_until=_ms_to_datetime(raw.get("lease_until")),
            lease_token=raw.get("lease_token") or None,
            worker_id=raw.get("worker_id") or None,
            result=json.loads(result) if result else None,
            outcome=raw.get("outcome") or None,
            error_code=raw.get("error_code") or None,
            error_message=raw.get("error_message") or None,
            cancel_requested=raw.get("cancel_requested") == "1",
        )


class JobError(BaseModel):
    code: str
    message: Optional[str] = None


class JobStatus(BaseModel):
    """Snapshot served to polling clients."""

    job_id: str
    kind: JobKind
    state: JobState
    progress: int
    attempts_made: int
    queue_position: Optional[int] = None
    result: Optional[list[dict[str, Any]]] = None
    outcome: Optional[str] = None
    error: Optional[JobError] = None
    cancel_requested: bool = False
