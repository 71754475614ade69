"""Backoff policy between retry attempts."""

from dataclasses import dataclass

import httpx
import structlog

from robustfetch.fetch.constants import HTTP_STATUS_TOO_MANY_REQUESTS
from robustfetch.fetch.context import CancelContext
from robustfetch.fetch.errors import CanceledError
from robustfetch.fetch.redact import redact_url_credentials


logger = structlog.get_logger()


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with an optional long pause on 429.

    Attributes:
        backoff_factor_seconds: Delay before the second attempt.
        long_backoff_on_429_seconds: Replacement delay after a 429 response,
            used only when larger than the exponential delay.
    """

    backoff_factor_seconds: float
    long_backoff_on_429_seconds: float | None = None

    def delay(self, attempt: int, last_status: int | None = None) -> float:
        """Calculate the delay after a failed attempt.

        Args:
            attempt: Index of the failed attempt (0-indexed).
            last_status: Status code of the failed attempt, if any.

        Returns:
            Delay in seconds.
        """
        computed = self.backoff_factor_seconds * (2**attempt)
        if (
            last_status == HTTP_STATUS_TOO_MANY_REQUESTS
            and self.long_backoff_on_429_seconds is not None
            and self.long_backoff_on_429_seconds > computed
        ):
            return self.long_backoff_on_429_seconds
        return computed

    def wait(
        self,
        ctx: CancelContext,
        attempt: int,
        url: str,
        max_retries: int,
        last_error: Exception | None = None,
        last_response: httpx.Response | None = None,
    ) -> float:
        """Sleep for the backoff delay, aborting on cancellation.

        Args:
            ctx: Governing cancellation context.
            attempt: Index of the failed attempt (0-indexed).
            url: Requested URL (for logging).
            max_retries: Configured attempt count (for logging).
            last_error: Error of the failed attempt, if any.
            last_response: Response of the failed attempt, if any.

        Returns:
            The delay that was waited, in seconds.

        Raises:
            CanceledError: If the context is done during the wait.
        """
        status = last_response.status_code if last_response is not None else None
        duration = self.delay(attempt, status)
        event = (
            "retry_long_backoff_on_429"
            if status == HTTP_STATUS_TOO_MANY_REQUESTS
            and duration == self.long_backoff_on_429_seconds
            else "retry_backoff"
        )

        log = logger.bind(
            component="fetch",
            url=redact_url_credentials(url),
            attempt=attempt + 1,
            max_retries=max_retries,
            backoff_s=duration,
            last_error=str(last_error) if last_error else None,
        )
        if last_response is not None:
            log = log.bind(
                response_status_code=status,
                response_reason=last_response.reason_phrase,
            )
        log.info(event)

        if ctx.wait(duration):
            raise CanceledError("context canceled during backoff")
        return duration
