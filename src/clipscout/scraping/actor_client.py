"""HTTP client for hosted scraper actors.

An actor run is asynchronous on the provider side: we start it, poll its
status with capped exponential backoff until it reaches a final status, then
download the dataset it produced. The whole wait is bounded in wall-clock
time so a stuck run fails the job instead of pinning a worker.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

import aiohttp
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from clipscout.coordination.call_throttle import ExternalCallThrottle
from clipscout.main.exceptions import NetworkError, ProviderError, RateLimitError
from clipscout.main.logging import get_logger
from clipscout.scraping.classify import error_for_status
from clipscout.worker.backoff import BackoffPolicy

logger = get_logger(__name__)

FAILED_RUN_STATUSES = frozenset({"FAILED", "ABORTED", "TIMED-OUT"})


class ActorClient:
    def __init__(
        self,
        session_provider: Callable[[], aiohttp.ClientSession],
        base_url: str,
        token: str | None,
        poll_policy: BackoffPolicy,
        run_timeout_seconds: float,
        throttle: ExternalCallThrottle | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self._session_provider = session_provider
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._poll_policy = poll_policy
        self._run_timeout = run_timeout_seconds
        self._throttle = throttle
        self._clock = clock
        self._sleep = sleep

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    @retry(
        wait=wait_random_exponential(min=1, max=30),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type((RateLimitError, NetworkError)),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        if self._throttle is not None:
            await self._throttle.acquire()

        session = self._session_provider()
        try:
            async with session.request(
                method,
                f"{self._base_url}{path}",
                json=json,
                params=params,
                headers=self._headers(),
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise error_for_status(response.status, f"{response.status}: {body[:200]}")
                return await response.json(content_type=None)
        except aiohttp.ClientResponseError as exc:
            raise error_for_status(exc.status, f"{exc.status}: {exc.message}") from exc
        except aiohttp.ClientError as exc:
            raise NetworkError(str(exc) or exc.__class__.__name__) from exc
        except asyncio.TimeoutError as exc:
            raise NetworkError(f"{method} {path} timed out") from exc

    async def run_actor(
        self,
        actor_id: str,
        run_input: dict[str, Any],
        *,
        limit: int,
    ) -> list[dict[str, Any]]:
        """Start an actor run, wait for it and return its dataset items."""
        started = await self._request("POST", f"/acts/{actor_id}/runs", json=run_input)
        run = started["data"]
        run_id = run["id"]

        try:
            await asyncio.wait_for(self._wait_for_run(run_id), timeout=self._run_timeout)
        except asyncio.TimeoutError as exc:
            await self._abort_quietly(run_id)
            raise ProviderError(
                f"Actor run {run_id} did not finish within {self._run_timeout}s"
            ) from exc

        dataset_id = run.get("defaultDatasetId")
        path = (
            f"/datasets/{dataset_id}/items"
            if dataset_id
            else f"/actor-runs/{run_id}/dataset/items"
        )
        items = await self._request(
            "GET", path, params={"clean": "true", "limit": str(limit)}
        )
        return items if isinstance(items, list) else []

    async def _wait_for_run(self, run_id: str) -> None:
        deadline = self._clock() + self._run_timeout
        polls = 0
        for wait in self._poll_policy.delays():
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(wait, remaining))
            polls += 1

            run = await self._request("GET", f"/actor-runs/{run_id}")
            status = run["data"]["status"]
            if status == "SUCCEEDED":
                logger.debug(
                    "Actor run succeeded",
                    extra={"run_id": run_id, "polls": polls},
                )
                return
            if status in FAILED_RUN_STATUSES:
                raise ProviderError(f"Actor run {run_id} finished with status {status}")

        await self._abort_quietly(run_id)
        raise ProviderError(f"Actor run {run_id} still running after {polls} polls")

    async def _abort_quietly(self, run_id: str) -> None:
        try:
            await self._request("POST", f"/actor-runs/{run_id}/abort")
        except Exception as exc:
            logger.warning(
                "Failed to abort actor run",
                extra={"run_id": run_id, "error": str(exc)},
            )
