"""Map arbitrary scrape failures onto the error taxonomy."""

from __future__ import annotations

import asyncio

import aiohttp

from clipscout.main.exceptions import (
    AuthError,
    InvalidInputError,
    NetworkError,
    ProviderError,
    RateLimitError,
    ScrapeError,
)

# Checked in order against the lower-cased message
_MESSAGE_RULES: tuple[tuple[tuple[str, ...], type[ScrapeError]], ...] = (
    (("429", "rate limit", "too many requests"), RateLimitError),
    (("401", "403", "unauthorized", "forbidden", "invalid token"), AuthError),
    (("timeout", "timed out", "econnrefused", "econnreset", "enotfound", "dns"), NetworkError),
)


def error_for_status(status: int, message: str) -> ScrapeError:
    """Exception for a non-2xx HTTP response from a provider."""
    if status == 429:
        return RateLimitError(message)
    if status in (401, 403):
        return AuthError(message)
    if status in (400, 404, 422):
        return InvalidInputError(message)
    return ProviderError(message)


def classify_scrape_error(exc: BaseException) -> ScrapeError:
    if isinstance(exc, ScrapeError):
        return exc

    if isinstance(exc, aiohttp.ClientResponseError):
        return error_for_status(exc.status, f"{exc.status}: {exc.message}")

    if isinstance(exc, (aiohttp.ClientConnectionError, asyncio.TimeoutError, ConnectionError)):
        return NetworkError(str(exc) or exc.__class__.__name__)

    message = str(exc)
    lowered = message.lower()
    for needles, error_class in _MESSAGE_RULES:
        if any(needle in lowered for needle in needles):
            return error_class(message)

    return ProviderError(message or exc.__class__.__name__)
