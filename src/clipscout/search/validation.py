from __future__ import annotations

from clipscout.cache.cache_key import CacheKey
from clipscout.main.exceptions import InvalidInputError
from clipscout.scraping.scrape_models import DateRange, Platform

MAX_QUERY_LENGTH = 200

SUPPORTED_PLATFORMS = frozenset(platform.value for platform in Platform)
SUPPORTED_DATE_RANGES = frozenset(date_range.value for date_range in DateRange)


def build_search_key(platform: str, query: str, date_range: str | None = None) -> CacheKey:
    """Normalize and validate a search, raising ``InvalidInputError`` when malformed."""
    if not isinstance(platform, str) or not isinstance(query, str):
        raise InvalidInputError("platform and query must be strings")

    key = CacheKey.of(platform, query, date_range)
    if key.platform not in SUPPORTED_PLATFORMS:
        raise InvalidInputError(f"Unsupported platform: {platform!r}")
    if not key.query:
        raise InvalidInputError("Search query cannot be empty")
    if len(key.query) > MAX_QUERY_LENGTH:
        raise InvalidInputError(f"Search query longer than {MAX_QUERY_LENGTH} characters")
    if key.date_range not in SUPPORTED_DATE_RANGES:
        raise InvalidInputError(f"Unsupported date range: {date_range!r}")
    return key
