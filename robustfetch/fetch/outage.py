"""Network outage detection.

Distinguishes a failure of one target host from a broad loss of network
connectivity by probing a set of independent, highly-available endpoints.
"""

import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait

import httpx
import structlog

from robustfetch.fetch.config import ProbeConfig
from robustfetch.fetch.redact import redact_url_credentials


logger = structlog.get_logger()

_IO_TIMEOUT_MARKERS = (
    "timed out",
    "i/o timeout",
    "temporary failure in name resolution",
)

_DIAL_ERROR_MARKERS = (
    "network is unreachable",
    "no route to host",
    "connection refused",
    "name or service not known",
    "nodename nor servname",
    "no such host",
    "getaddrinfo failed",
    *_IO_TIMEOUT_MARKERS,
)


def looks_like_network_issue(error: BaseException | None, url: str = "") -> bool:
    """Check whether an error looks like a dial-level timeout.

    A connection that could not be established within the timeout, or
    whose name resolution timed out, is the signature of a local network
    or DNS outage rather than a misbehaving server.

    Args:
        error: Transport error from an attempt.
        url: Requested URL (for logging).

    Returns:
        True for connection-establishment timeouts.
    """
    if error is None:
        return False

    matched = isinstance(error, httpx.ConnectTimeout)
    if not matched and isinstance(error, httpx.ConnectError):
        text = str(error).lower()
        matched = any(marker in text for marker in _IO_TIMEOUT_MARKERS)

    if matched:
        logger.warning(
            "network_or_dns_issue_detected",
            component="outage",
            error=str(error),
            url=redact_url_credentials(url),
        )
    return matched


def is_dial_error(error: BaseException | None) -> bool:
    """Check whether an error is any kind of connectivity failure.

    Broader than ``looks_like_network_issue``: also covers refused or
    unreachable connections, DNS failures and any transport timeout.

    Args:
        error: Error to classify.

    Returns:
        True if retrying later could plausibly succeed.
    """
    if error is None:
        return False
    if isinstance(error, (httpx.TimeoutException, httpx.ConnectError)):
        return True
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    text = str(error).lower()
    return any(marker in text for marker in _DIAL_ERROR_MARKERS)


class NetworkOutageProbe:
    """Concurrent liveness probe against known-reachable endpoints."""

    def __init__(
        self,
        config: ProbeConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the probe.

        Args:
            config: Probe targets and per-probe timeout.
            transport: Optional transport override (used in tests).
        """
        self._config = config or ProbeConfig()
        self._transport = transport
        self._log = logger.bind(component="outage")

    @property
    def targets(self) -> tuple[str, ...]:
        """Get the probe targets."""
        return self._config.targets

    def _probe(self, url: str) -> bool:
        try:
            with httpx.Client(
                timeout=self._config.timeout_seconds,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                client.get(url)
        except httpx.HTTPError as e:
            self._log.debug("probe_failed", target=url, error=str(e))
            return False
        return True

    def is_network_available(self) -> bool:
        """Probe all targets concurrently.

        Returns True as soon as any probe succeeds, without waiting for the
        others, so the total wait is bounded by the slowest single probe.

        Returns:
            False only if every probe failed.
        """
        start = time.monotonic()
        targets = self._config.targets
        executor = ThreadPoolExecutor(
            max_workers=len(targets), thread_name_prefix="outage-probe"
        )
        try:
            pending = {executor.submit(self._probe, url) for url in targets}
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                if any(future.result() for future in done):
                    self._log.info(
                        "network_available",
                        elapsed_s=round(time.monotonic() - start, 3),
                    )
                    return True
        finally:
            # Slow probes finish in the background; their result is irrelevant
            executor.shutdown(wait=False, cancel_futures=True)

        self._log.warning(
            "network_unavailable",
            targets=list(targets),
            elapsed_s=round(time.monotonic() - start, 3),
        )
        return False

    def is_globally_unavailable(self, error: BaseException | None, url: str = "") -> bool:
        """Decide whether a failed attempt is part of a broad outage.

        Args:
            error: Transport error of the failed attempt.
            url: Requested URL (for logging).

        Returns:
            True if the error looks like a network issue and all probes fail.
        """
        if not looks_like_network_issue(error, url):
            return False
        return not self.is_network_available()
