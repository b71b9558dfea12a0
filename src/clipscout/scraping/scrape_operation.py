from __future__ import annotations

from typing import Protocol

from clipscout.scraping.scrape_models import ResultItem, ScrapeRequest


class ScrapeOperation(Protocol):
    """Fetch search results for one request.

    Implementations raise ``ScrapeError`` subclasses on failure and must be
    safe to retry.
    """

    async def fetch(self, request: ScrapeRequest) -> list[ResultItem]: ...


def merge_by_id(batches: list[list[ResultItem]]) -> list[ResultItem]:
    """Concatenate batches keeping the first occurrence of every id."""
    merged: dict[str, ResultItem] = {}
    for batch in batches:
        for item in batch:
            merged.setdefault(item.id, item)
    return list(merged.values())
