"""Run several ranking strategies for one search and merge their results."""

from __future__ import annotations

import asyncio
from typing import Any

from clipscout.main.exceptions import ErrorCode, InvalidInputError, ScrapeError
from clipscout.main.logging import get_logger
from clipscout.scraping.actor_client import ActorClient
from clipscout.scraping.classify import classify_scrape_error
from clipscout.scraping.scrape_models import Platform, ResultItem, ScrapeRequest
from clipscout.scraping.scrape_operation import merge_by_id

logger = get_logger(__name__)

_TIKTOK_DATE_RANGES = {
    "all": "DEFAULT",
    "yesterday": "YESTERDAY",
    "7days": "THIS_WEEK",
    "1month": "THIS_MONTH",
    "3months": "LAST_THREE_MONTHS",
    "6months": "LAST_SIX_MONTHS",
}

# Most severe first; used to pick the error reported when every strategy fails
_SEVERITY = (
    ErrorCode.AUTH_ERROR,
    ErrorCode.INVALID_INPUT,
    ErrorCode.RATE_LIMIT,
    ErrorCode.NETWORK_ERROR,
    ErrorCode.PROVIDER_ERROR,
)


def build_actor_input(request: ScrapeRequest, strategy: str) -> dict[str, Any]:
    if request.platform == Platform.TIKTOK:
        return {
            "keywords": [request.query],
            "maxItems": request.limit,
            "sortType": strategy.upper(),
            "dateRange": _TIKTOK_DATE_RANGES[request.date_range.value],
            "location": "US",
        }
    return {
        "query": request.query,
        "maxItems": request.limit,
        "sortBy": strategy,
        "dateRange": request.date_range.value,
    }


def most_severe(errors: list[ScrapeError]) -> ScrapeError:
    def rank(error: ScrapeError) -> int:
        try:
            return _SEVERITY.index(error.code)
        except ValueError:
            return len(_SEVERITY)

    return min(errors, key=rank)


class MultiStrategyScraper:
    """Fan one request out over ranking strategies in parallel.

    Results are merged by item id, first strategy wins on duplicates. A
    partial failure is tolerated as long as one strategy succeeded.
    """

    def __init__(
        self,
        client: ActorClient,
        actor_ids: dict[str, str],
        strategies: list[str],
    ):
        self._client = client
        self._actor_ids = actor_ids
        self._strategies = strategies or ["relevance"]

    async def _run_strategy(
        self, actor_id: str, request: ScrapeRequest, strategy: str
    ) -> list[ResultItem]:
        raw_items = await self._client.run_actor(
            actor_id, build_actor_input(request, strategy), limit=request.limit
        )
        items = [ResultItem.from_raw(raw) for raw in raw_items if isinstance(raw, dict)]
        return [item for item in items if item is not None]

    async def fetch(self, request: ScrapeRequest) -> list[ResultItem]:
        actor_id = self._actor_ids.get(request.platform.value)
        if not actor_id:
            raise InvalidInputError(f"No actor configured for {request.platform.value}")

        outcomes = await asyncio.gather(
            *(self._run_strategy(actor_id, request, s) for s in self._strategies),
            return_exceptions=True,
        )

        batches: list[list[ResultItem]] = []
        errors: list[ScrapeError] = []
        for strategy, outcome in zip(self._strategies, outcomes):
            if isinstance(outcome, BaseException):
                error = classify_scrape_error(outcome)
                errors.append(error)
                logger.warning(
                    f"Strategy {strategy} failed",
                    extra={
                        "strategy": strategy,
                        "platform": request.platform.value,
                        "error_code": error.code.value,
                        "error": str(error),
                    },
                )
            else:
                batches.append(outcome)

        if not batches:
            raise most_severe(errors)

        merged = merge_by_id(batches)[: request.limit]
        logger.info(
            "Merged strategy results",
            extra={
                "platform": request.platform.value,
                "strategies": len(self._strategies),
                "failed_strategies": len(errors),
                "items": len(merged),
            },
        )
        return merged
