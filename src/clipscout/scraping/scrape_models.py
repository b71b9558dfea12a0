from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from clipscout.cache.cache_key import CacheKey

ID_FIELDS = ("id", "video_id", "videoId", "aweme_id", "note_id")


class Platform(str, Enum):
    TIKTOK = "tiktok"
    DOUYIN = "douyin"
    XIAOHONGSHU = "xiaohongshu"
    YOUTUBE = "youtube"


class DateRange(str, Enum):
    ALL = "all"
    YESTERDAY = "yesterday"
    SEVEN_DAYS = "7days"
    ONE_MONTH = "1month"
    THREE_MONTHS = "3months"
    SIX_MONTHS = "6months"


class ScrapeRequest(BaseModel):
    platform: Platform
    query: str
    date_range: DateRange = DateRange.ALL
    limit: int = 100

    @classmethod
    def for_key(cls, key: CacheKey, limit: int) -> "ScrapeRequest":
        return cls(
            platform=Platform(key.platform),
            query=key.query,
            date_range=DateRange(key.date_range),
            limit=limit,
        )


class ResultItem(BaseModel):
    """One search hit. Only ``id`` is interpreted; everything else passes through."""

    model_config = ConfigDict(extra="allow")

    id: str
    title: Optional[str] = None
    web_video_url: Optional[str] = None
    thumbnail: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> Optional["ResultItem"]:
        """Build an item from a provider record; records without an id are dropped."""
        for field in ID_FIELDS:
            value = raw.get(field)
            if value not in (None, ""):
                return cls.model_validate({**raw, "id": str(value)})
        return None
