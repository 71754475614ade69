"""Error types for the fetch layer."""

from enum import Enum


class FetchErrorClass(str, Enum):
    """Classification of fetch errors for metrics and logging.

    - CANCELED: Caller cancelled or the deadline passed
    - NOT_FOUND_NO_RETRY: 404 with retries suppressed
    - UNPROCESSABLE_NO_RETRY: 422 with retries suppressed
    - HTTP_STATUS: Any other non-2xx status
    - TRANSPORT: Connection, timeout or protocol failure
    - NETWORK_UNAVAILABLE: Outage persisted beyond the recovery budget
    - DECODE: Decompression or charset failure
    - MAX_RETRIES: All attempts exhausted
    """

    CANCELED = "CANCELED"
    NOT_FOUND_NO_RETRY = "NOT_FOUND_NO_RETRY"
    UNPROCESSABLE_NO_RETRY = "UNPROCESSABLE_NO_RETRY"
    HTTP_STATUS = "HTTP_STATUS"
    TRANSPORT = "TRANSPORT"
    NETWORK_UNAVAILABLE = "NETWORK_UNAVAILABLE"
    DECODE = "DECODE"
    MAX_RETRIES = "MAX_RETRIES"


class FetchError(Exception):
    """Base exception for fetch errors."""

    error_class: FetchErrorClass = FetchErrorClass.TRANSPORT


class CanceledError(FetchError):
    """The governing context was cancelled or its deadline passed."""

    error_class = FetchErrorClass.CANCELED

    def __init__(self, message: str = "context canceled") -> None:
        super().__init__(message)


class InvalidURLError(FetchError, ValueError):
    """URL is not a syntactically valid absolute http(s) URL."""

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"Invalid URL: {url!r}")


class StatusCodeError(FetchError):
    """Non-2xx HTTP status.

    Attributes:
        status_code: HTTP status code of the response.
        url: URL that produced the status.
    """

    error_class = FetchErrorClass.HTTP_STATUS

    def __init__(self, status_code: int, url: str, message: str | None = None) -> None:
        """Initialize the error.

        Args:
            status_code: HTTP status code.
            url: Requested URL.
            message: Optional message prefix.
        """
        self.status_code = status_code
        self.url = url
        self.message = message or f"HTTP {status_code}"
        super().__init__(f"{self.message}: {url}")


class NotFoundNoRetryError(StatusCodeError):
    """404 Not Found, not retried because no_retry_on_404 is set."""

    error_class = FetchErrorClass.NOT_FOUND_NO_RETRY

    def __init__(self, url: str) -> None:
        super().__init__(404, url, "404 Not Found, not retrying")


class UnprocessableNoRetryError(StatusCodeError):
    """422 Unprocessable Entity, not retried because no_retry_on_422 is set."""

    error_class = FetchErrorClass.UNPROCESSABLE_NO_RETRY

    def __init__(self, url: str) -> None:
        super().__init__(422, url, "422 Unprocessable Entity, not retrying")


class MaxRetriesExceededError(FetchError):
    """All scheduled attempts failed.

    The last observed error is available as ``last_error`` and as the
    exception's ``__cause__``.
    """

    error_class = FetchErrorClass.MAX_RETRIES

    def __init__(self, url: str, attempts: int, last_error: Exception | None) -> None:
        """Initialize the error.

        Args:
            url: Requested URL.
            attempts: Number of attempts made.
            last_error: Error from the final attempt.
        """
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"max retries reached ({attempts}) for {url}: last error: {last_error}"
        )


class NetworkUnavailableAfterMaxWaitError(FetchError):
    """Network stayed unavailable for the whole recovery budget."""

    error_class = FetchErrorClass.NETWORK_UNAVAILABLE

    def __init__(self, url: str, waited_seconds: float) -> None:
        self.url = url
        self.waited_seconds = waited_seconds
        super().__init__(
            f"network unavailable after max wait ({waited_seconds:.0f}s): {url}"
        )


class BodyReadError(FetchError):
    """Transport failure while reading an already-started response body.

    The underlying httpx error is the exception's ``__cause__``.
    """

    def __init__(self, url: str, message: str) -> None:
        self.url = url
        super().__init__(f"failed to read response body from {url}: {message}")


class AttemptTimeoutError(BodyReadError):
    """An attempt outlived its per-attempt timeout.

    Raised when the deadline passes while the body is still arriving, or
    when a single read times out.
    """

    def __init__(self, url: str) -> None:
        super().__init__(url, "attempt timed out")


class DecodeError(FetchError):
    """Response body could not be decompressed or charset-decoded."""

    error_class = FetchErrorClass.DECODE


class StreamParseError(FetchError):
    """Malformed sentinel line in an incremental stream.

    Only ever logged; it never interrupts stream delivery.
    """

    def __init__(self, line: str, reason: str) -> None:
        self.line = line
        self.reason = reason
        super().__init__(f"Malformed stream sentinel ({reason}): {line[:200]}")


class RedirectFetchError(FetchError):
    """Redirect-aware fetch failed.

    Attributes:
        url: URL that was requested when the failure happened.
    """

    def __init__(self, url: str, cause: Exception) -> None:
        self.url = url
        self.error_class = getattr(cause, "error_class", FetchErrorClass.TRANSPORT)
        super().__init__(f"failed to get a response for the URL {url}: {cause}")


def is_not_found_no_retry(error: BaseException | None) -> bool:
    """Check whether an error chain contains a NotFoundNoRetryError.

    Args:
        error: Error to inspect.

    Returns:
        True if the error or one of its causes is a suppressed 404.
    """
    while error is not None:
        if isinstance(error, NotFoundNoRetryError):
            return True
        error = error.__cause__
    return False
