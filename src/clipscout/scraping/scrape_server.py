"""Dedicated scrape server tried before the hosted actors."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import aiohttp

from clipscout.coordination.call_throttle import ExternalCallThrottle
from clipscout.main.exceptions import NetworkError, ProviderError, ScrapeError
from clipscout.main.logging import get_logger
from clipscout.scraping.classify import error_for_status
from clipscout.scraping.scrape_models import ResultItem, ScrapeRequest
from clipscout.scraping.scrape_operation import ScrapeOperation, merge_by_id

logger = get_logger(__name__)


class ScrapeServerClient:
    def __init__(
        self,
        session_provider: Callable[[], aiohttp.ClientSession],
        base_url: str,
        api_key: str | None,
        timeout_seconds: float,
        throttle: ExternalCallThrottle | None = None,
    ):
        self._session_provider = session_provider
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._throttle = throttle

    async def fetch(self, request: ScrapeRequest) -> list[ResultItem]:
        if self._throttle is not None:
            await self._throttle.acquire()

        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["X-API-Key"] = self._api_key
        payload = {
            "query": request.query,
            "platform": request.platform.value,
            "limit": request.limit,
            "dateRange": request.date_range.value,
        }

        session = self._session_provider()
        try:
            async with session.post(
                f"{self._base_url}/api/scrape",
                json=payload,
                headers=headers,
                timeout=self._timeout,
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise error_for_status(response.status, f"{response.status}: {body[:200]}")
                data: Any = await response.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise NetworkError(str(exc) or exc.__class__.__name__) from exc
        except asyncio.TimeoutError as exc:
            raise NetworkError("Scrape server timed out") from exc

        if isinstance(data, dict):
            if data.get("success") is False:
                raise ProviderError(str(data.get("error") or "Scrape server reported failure"))
            data = data.get("videos") or data.get("data") or []

        items = [ResultItem.from_raw(raw) for raw in data if isinstance(raw, dict)]
        return merge_by_id([[item for item in items if item is not None]])[: request.limit]


class FallbackScrapeOperation:
    """Use the primary operation and fall back to the secondary on error or no results."""

    def __init__(self, primary: ScrapeOperation | None, secondary: ScrapeOperation):
        self._primary = primary
        self._secondary = secondary

    async def fetch(self, request: ScrapeRequest) -> list[ResultItem]:
        if self._primary is not None:
            try:
                items = await self._primary.fetch(request)
                if items:
                    return items
                logger.info(
                    "Primary scraper returned no results, falling back",
                    extra={"platform": request.platform.value},
                )
            except ScrapeError as exc:
                logger.warning(
                    "Primary scraper failed, falling back",
                    extra={
                        "platform": request.platform.value,
                        "error_code": exc.code.value,
                        "error": str(exc),
                    },
                )
        return await self._secondary.fetch(request)
