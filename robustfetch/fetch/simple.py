"""Single-shot fetching without retries."""

import httpx
import structlog

from robustfetch.fetch.client import validate_url
from robustfetch.fetch.constants import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_USER_AGENT,
    HTTP_STATUS_OK_MAX,
    HTTP_STATUS_OK_MIN,
)
from robustfetch.fetch.errors import StatusCodeError
from robustfetch.fetch.metrics import FetchMetrics
from robustfetch.fetch.redact import redact_url_credentials


logger = structlog.get_logger()


def simple_fetch_bytes(
    url: str,
    transport: httpx.BaseTransport | None = None,
    timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> bytes:
    """Fetch a URL once and return the raw body.

    No retries, no rate limiting and no charset normalization; only the
    transport's own content decoding is applied.

    Args:
        url: Absolute http(s) URL.
        transport: Optional transport override (used in tests).
        timeout_seconds: Request timeout.

    Returns:
        Response body.

    Raises:
        InvalidURLError: If the URL is not absolute http(s).
        StatusCodeError: On any non-2xx status.
        httpx.TransportError: On connection or timeout failures.
    """
    validate_url(url)
    with httpx.Client(
        headers={"User-Agent": DEFAULT_USER_AGENT},
        transport=transport,
        timeout=timeout_seconds,
        follow_redirects=True,
    ) as client:
        response = client.get(url)

    FetchMetrics.get_instance().record_request(
        response.status_code, response.elapsed.total_seconds() * 1000
    )
    if not HTTP_STATUS_OK_MIN <= response.status_code < HTTP_STATUS_OK_MAX:
        logger.warning(
            "simple_fetch_failed",
            component="fetch",
            url=redact_url_credentials(url),
            status_code=response.status_code,
        )
        raise StatusCodeError(response.status_code, url)
    return response.content
