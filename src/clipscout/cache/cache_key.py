from __future__ import annotations

from dataclasses import dataclass

ALL_DATES = "all"


@dataclass(frozen=True, slots=True)
class CacheKey:
    """Identity of one logical search: ``platform:query:date_range``.

    The query is case-folded and trimmed so equivalent searches share an
    entry. A missing date range is stored as ``all``.
    """

    platform: str
    query: str
    date_range: str = ALL_DATES

    @classmethod
    def of(cls, platform: str, query: str, date_range: str | None = None) -> "CacheKey":
        return cls(
            platform=platform.strip().lower(),
            query=query.strip().lower(),
            date_range=(date_range or "").strip().lower() or ALL_DATES,
        )

    @classmethod
    def parse(cls, value: str) -> "CacheKey":
        """Rebuild a key from its string form.

        The query itself may contain ``:``, so only the first and last
        separators are structural.
        """
        platform, _, rest = value.partition(":")
        query, _, date_range = rest.rpartition(":")
        if not platform or not date_range:
            raise ValueError(f"Malformed cache key: {value!r}")
        return cls(platform=platform, query=query, date_range=date_range)

    @property
    def rate_scope(self) -> str:
        """Scope shared by every date range of the same query."""
        return f"{self.platform}:{self.query}"

    def __str__(self) -> str:
        return f"{self.platform}:{self.query}:{self.date_range}"
