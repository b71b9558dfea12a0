from enum import Enum


class ErrorCode(str, Enum):
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK_ERROR = "NETWORK_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    NO_RESULTS = "NO_RESULTS"
    RECRAWL_RATE_LIMITED = "RECRAWL_RATE_LIMITED"
    LOCK_CONTENDED = "LOCK_CONTENDED"
    INVALID_INPUT = "INVALID_INPUT"
    STALLED = "STALLED"
    CANCELLED = "CANCELLED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    RECRAWL_DISABLED = "RECRAWL_DISABLED"


class ClipScoutException(Exception):
    """Base exception for the search pipeline."""

    code: ErrorCode = ErrorCode.PROVIDER_ERROR

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or ""
        super().__init__(self.message)


# =============================================================================
# Scrape failures
# =============================================================================


class ScrapeError(ClipScoutException):
    """The external scrape operation failed."""

    retryable: bool = True

    def __init__(
        self,
        message: str = "",
        code: ErrorCode | None = None,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable


class RateLimitError(ScrapeError):
    """External provider throttled the scrape call."""

    code = ErrorCode.RATE_LIMIT


class NetworkError(ScrapeError):
    """Connection to the external provider was refused or timed out."""

    code = ErrorCode.NETWORK_ERROR


class AuthError(ScrapeError):
    """External provider rejected our credentials."""

    code = ErrorCode.AUTH_ERROR
    retryable = False


class ProviderError(ScrapeError):
    """External operation ran but reported a failure."""

    code = ErrorCode.PROVIDER_ERROR


class NoResultsError(ScrapeError):
    """Scrape succeeded but returned no items."""

    code = ErrorCode.NO_RESULTS


class InvalidInputError(ScrapeError):
    """The search request is malformed."""

    code = ErrorCode.INVALID_INPUT
    retryable = False


# =============================================================================
# Synchronous rejections and infrastructure failures
# =============================================================================


class RecrawlRateLimitedError(ClipScoutException):
    """Recrawl denied by the per-key frequency cap."""

    code = ErrorCode.RECRAWL_RATE_LIMITED

    def __init__(self, cache_key: str, retry_after_seconds: int):
        self.cache_key = cache_key
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Recrawl rate limit reached for {cache_key}. "
            f"Retry in {retry_after_seconds}s."
        )


class LockContendedError(ClipScoutException):
    """Refresh lock kept changing hands while a recrawl was being set up."""

    code = ErrorCode.LOCK_CONTENDED


class RecrawlDisabledError(ClipScoutException):
    """Automatic recrawl is disabled."""

    code = ErrorCode.RECRAWL_DISABLED


class StoreUnavailableError(ClipScoutException):
    """Raised when the shared store cannot be reached."""

    code = ErrorCode.STORE_UNAVAILABLE

    def __init__(self, original_error: Exception):
        self.original_error = original_error
        super().__init__(f"Shared store unavailable: {original_error}")


class JobNotFoundError(ClipScoutException):
    """Raised when a job id does not resolve to a stored job."""

    code = ErrorCode.INVALID_INPUT

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class NotReadyException(ClipScoutException):
    """Raised when a component is used before it was started."""
