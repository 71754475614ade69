"""HTTP client with retries, rate limiting and network outage recovery."""

import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from types import TracebackType
from urllib.parse import urlparse

import httpx
import structlog

from robustfetch.fetch.backoff import BackoffPolicy
from robustfetch.fetch.config import FetchConfig
from robustfetch.fetch.constants import (
    HTTP_STATUS_NOT_FOUND,
    HTTP_STATUS_UNPROCESSABLE_ENTITY,
)
from robustfetch.fetch.context import CancelContext, background
from robustfetch.fetch.decoder import (
    decode_body,
    iter_decoded_body,
    iter_decompressed_body,
)
from robustfetch.fetch.errors import (
    BodyReadError,
    CanceledError,
    DecodeError,
    FetchError,
    InvalidURLError,
    MaxRetriesExceededError,
    NetworkUnavailableAfterMaxWaitError,
    NotFoundNoRetryError,
    StatusCodeError,
    UnprocessableNoRetryError,
)
from robustfetch.fetch.metrics import FetchMetrics
from robustfetch.fetch.models import AttemptOutcome
from robustfetch.fetch.outage import NetworkOutageProbe, looks_like_network_issue
from robustfetch.fetch.rate_limiter import RateLimiterProtocol, TokenBucketRateLimiter
from robustfetch.fetch.redact import redact_headers, redact_url_credentials


logger = structlog.get_logger()

RedirectHook = Callable[[str], None]


def validate_url(url: str) -> str:
    """Ensure a URL is an absolute http(s) URL.

    Args:
        url: URL to validate.

    Returns:
        The URL unchanged.

    Raises:
        InvalidURLError: If the URL is relative, schemeless or not http(s).
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidURLError(url)
    return url


class RetryEngine:
    """HTTP GET with retries, rate limiting and outage recovery.

    One engine is constructed per logical client and shared by all callers
    of that client. Apart from the token bucket, no state is shared between
    calls, so concurrent use from many threads is safe.

    Provides:
    - Exponential backoff, with an optional long pause after 429
    - A single token-bucket rate limit across all concurrent callers
    - Immediate stop on 404/422 when configured
    - An extra bounded recovery phase when the whole network is down
    - gzip and charset normalization of bodies
    """

    def __init__(
        self,
        config: FetchConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        probe: NetworkOutageProbe | None = None,
        rate_limiter: RateLimiterProtocol | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Fetch configuration.
            transport: Optional transport override (used in tests).
            probe: Outage probe; built from ``config.probe`` if omitted.
            rate_limiter: Limiter override; built from ``config.rate_limit``
                if omitted.
        """
        self._config = config or FetchConfig()
        self._client = httpx.Client(
            # Only encodings the body decoder understands may be offered
            headers={"Accept-Encoding": "gzip, deflate", **self._config.headers},
            transport=transport,
            follow_redirects=False,
        )
        self._backoff = BackoffPolicy(
            backoff_factor_seconds=self._config.backoff_factor_seconds,
            long_backoff_on_429_seconds=self._config.long_backoff_on_429_seconds,
        )
        self._probe = probe or NetworkOutageProbe(self._config.probe)
        self._limiter = rate_limiter
        if self._limiter is None and self._config.rate_limit is not None:
            self._limiter = TokenBucketRateLimiter(
                rate=self._config.rate_limit.rate,
                burst=self._config.rate_limit.burst,
            )
        self._metrics = FetchMetrics.get_instance()
        self._log = logger.bind(component="fetch")

    @property
    def config(self) -> FetchConfig:
        """Get the engine configuration."""
        return self._config

    @property
    def backoff(self) -> BackoffPolicy:
        """Get the backoff policy."""
        return self._backoff

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def __enter__(self) -> "RetryEngine":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _send(
        self,
        ctx: CancelContext,
        method: str,
        url: str,
        headers: Mapping[str, str] | None,
        content: bytes | None,
        on_redirect: RedirectHook | None,
    ) -> httpx.Response:
        """Send one request, following up to ``max_redirects`` redirects.

        ``ctx`` is the per-attempt context; each hop gets the time it has
        left. Beyond the redirect cap the last response is returned as-is.
        """
        request = self._client.build_request(
            method,
            url,
            headers=headers,
            content=content,
            timeout=ctx.remaining(),
        )
        hops = 0
        while True:
            response = self._client.send(request, stream=True)
            next_request = response.next_request
            if next_request is None or hops >= self._config.max_redirects:
                return response
            response.close()
            hops += 1
            target = str(next_request.url)
            if self._config.log_redirects:
                self._log.info(
                    "redirecting_request",
                    url=redact_url_credentials(target),
                    hop=hops,
                )
            if on_redirect is not None:
                on_redirect(target)
            next_request.extensions["timeout"] = httpx.Timeout(
                ctx.remaining()
            ).as_dict()
            request = next_request

    def _attempt(
        self,
        ctx: CancelContext,
        url: str,
        attempt: int,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        content: bytes | None = None,
        on_redirect: RedirectHook | None = None,
    ) -> AttemptOutcome:
        """Run a single request/response cycle.

        The attempt runs under a child of ``ctx`` whose deadline is
        ``request_timeout_seconds`` away (or the caller's deadline, if
        sooner). A successful outcome carries that child so the body read
        stays within the same budget.
        """
        if ctx.is_done:
            raise self._fail(CanceledError())

        attempt_ctx = ctx.child(timeout_seconds=self._config.request_timeout_seconds)
        start = time.perf_counter()
        try:
            response = self._send(
                attempt_ctx, method, url, headers, content, on_redirect
            )
        except httpx.TransportError as e:
            attempt_ctx.release()
            elapsed = time.perf_counter() - start
            self._log.debug(
                "attempt_failed",
                url=redact_url_credentials(url),
                attempt=attempt + 1,
                error_type=type(e).__name__,
                error=str(e),
                elapsed_s=round(elapsed, 3),
            )
            return AttemptOutcome(attempt=attempt, elapsed_s=elapsed, error=e)

        elapsed = time.perf_counter() - start
        self._metrics.record_request(response.status_code, elapsed * 1000)
        self._log.debug(
            "attempt_complete",
            url=redact_url_credentials(url),
            attempt=attempt + 1,
            status_code=response.status_code,
            elapsed_s=round(elapsed, 3),
        )
        return AttemptOutcome(
            attempt=attempt, elapsed_s=elapsed, response=response, ctx=attempt_ctx
        )

    def _raise_for_policy(self, outcome: AttemptOutcome, url: str) -> None:
        """Stop immediately on statuses whose retry is suppressed.

        Closes the response before raising.
        """
        error: StatusCodeError | None = None
        if outcome.status_code == HTTP_STATUS_NOT_FOUND and self._config.no_retry_on_404:
            error = NotFoundNoRetryError(url)
        elif (
            outcome.status_code == HTTP_STATUS_UNPROCESSABLE_ENTITY
            and self._config.no_retry_on_422
        ):
            error = UnprocessableNoRetryError(url)
        if error is not None:
            outcome.close()
            raise self._fail(error)

    def _fail(self, error: FetchError) -> FetchError:
        self._metrics.record_failure(error.error_class)
        return error

    def _wait_for_rate_limit(self, ctx: CancelContext) -> None:
        if self._limiter is not None:
            try:
                self._limiter.wait(ctx)
            except CanceledError as e:
                raise self._fail(e) from None

    def get_attempt(
        self,
        url: str,
        ctx: CancelContext | None = None,
        *,
        headers: Mapping[str, str] | None = None,
        on_redirect: RedirectHook | None = None,
    ) -> AttemptOutcome:
        """Send a GET request, retrying failures according to the config.

        The successful outcome holds an open stream-mode response and the
        per-attempt context that bounds reading its body. The caller owns
        both and must ``close()`` the outcome.

        Args:
            url: Absolute http(s) URL.
            ctx: Cancellation context; a fresh one is used if omitted.
            headers: Extra headers for this call only.
            on_redirect: Called with each URL an HTTP redirect leads to.

        Returns:
            Outcome of the successful 2xx attempt.

        Raises:
            InvalidURLError: If the URL is not absolute http(s).
            CanceledError: If the context is cancelled or expires.
            NotFoundNoRetryError: On 404 with ``no_retry_on_404``.
            UnprocessableNoRetryError: On 422 with ``no_retry_on_422``.
            NetworkUnavailableAfterMaxWaitError: If outage recovery gives up.
            MaxRetriesExceededError: If every attempt failed.
        """
        validate_url(url)
        ctx = ctx or background()
        max_retries = self._config.max_retries
        log = self._log.bind(url=redact_url_credentials(url))

        # The limiter gates the call, not each attempt; backoff delays are
        # expected to exceed the token refill interval.
        self._wait_for_rate_limit(ctx)

        last_error: Exception | None = None
        for attempt in range(max_retries):
            outcome = self._attempt(
                ctx, url, attempt, headers=headers, on_redirect=on_redirect
            )
            if outcome.is_success:
                return outcome

            self._raise_for_policy(outcome, url)
            outcome.close()
            if outcome.error is not None:
                last_error = outcome.error
            else:
                assert outcome.status_code is not None
                last_error = StatusCodeError(outcome.status_code, url)

            if ctx.is_done:
                log.info("fetch_canceled", attempt=attempt + 1)
                raise self._fail(CanceledError()) from outcome.error

            is_final = attempt == max_retries - 1
            if (
                is_final
                and self._config.network_recovery is not None
                and self._probe.is_globally_unavailable(outcome.error, url)
            ):
                return self._recover_from_outage(
                    ctx, url, headers=headers, on_redirect=on_redirect
                )
            if is_final:
                break

            self._metrics.record_retry()
            try:
                self._backoff.wait(
                    ctx,
                    attempt,
                    url,
                    max_retries,
                    last_error=last_error,
                    last_response=outcome.response,
                )
            except CanceledError as e:
                raise self._fail(e) from last_error

        log.warning(
            "max_retries_reached",
            attempts=max_retries,
            last_error=str(last_error),
        )
        raise self._fail(
            MaxRetriesExceededError(url, max_retries, last_error)
        ) from last_error

    def get_response(
        self,
        url: str,
        ctx: CancelContext | None = None,
        *,
        headers: Mapping[str, str] | None = None,
        on_redirect: RedirectHook | None = None,
    ) -> httpx.Response:
        """Send a GET request with retries and return the open response.

        Same as ``get_attempt``, but only the response is handed over. Its
        body read is then bounded by httpx's per-read timeout alone; the
        caller must close it (or use ``open``).
        """
        outcome = self.get_attempt(url, ctx, headers=headers, on_redirect=on_redirect)
        assert outcome.response is not None
        if outcome.ctx is not None:
            outcome.ctx.release()
        return outcome.response

    def _recover_from_outage(
        self,
        ctx: CancelContext,
        url: str,
        *,
        headers: Mapping[str, str] | None,
        on_redirect: RedirectHook | None,
    ) -> AttemptOutcome:
        """Keep retrying while the whole network is down.

        Bounded by ``network_recovery.max_wait_seconds`` rather than by the
        attempt count.
        """
        policy = self._config.network_recovery
        assert policy is not None
        log = self._log.bind(url=redact_url_credentials(url))
        start = ctx.monotonic()
        attempt = self._config.max_retries

        while True:
            waited = ctx.monotonic() - start
            remaining = policy.max_wait_seconds - waited
            if remaining <= 0:
                log.error("network_unavailable_after_max_wait", waited_s=waited)
                raise self._fail(NetworkUnavailableAfterMaxWaitError(url, waited))

            sleep_for = min(remaining, policy.backoff_seconds)
            log.warning(
                "network_outage_recovery_sleep",
                sleep_s=sleep_for,
                remaining_s=round(remaining, 3),
            )
            if ctx.wait(sleep_for):
                raise self._fail(CanceledError("context canceled during outage recovery"))

            self._metrics.record_network_recovery_attempt()
            outcome = self._attempt(
                ctx, url, attempt, headers=headers, on_redirect=on_redirect
            )
            attempt += 1
            if outcome.is_success:
                log.info("network_outage_recovered", waited_s=ctx.monotonic() - start)
                return outcome

            self._raise_for_policy(outcome, url)
            outcome.close()

            if ctx.is_done:
                raise self._fail(CanceledError()) from outcome.error
            if outcome.error is not None and not looks_like_network_issue(
                outcome.error, url
            ):
                log.error(
                    "network_outage_recovery_aborted",
                    error_type=type(outcome.error).__name__,
                    error=str(outcome.error),
                )
                raise outcome.error

    @contextmanager
    def open(
        self,
        url: str,
        ctx: CancelContext | None = None,
        *,
        headers: Mapping[str, str] | None = None,
        on_redirect: RedirectHook | None = None,
    ) -> Iterator[httpx.Response]:
        """Context manager around ``get_attempt`` that always releases the body.

        Args:
            url: Absolute http(s) URL.
            ctx: Cancellation context.
            headers: Extra headers for this call only.
            on_redirect: Called with each URL an HTTP redirect leads to.

        Yields:
            Open 2xx response.
        """
        outcome = self.get_attempt(url, ctx, headers=headers, on_redirect=on_redirect)
        assert outcome.response is not None
        try:
            yield outcome.response
        finally:
            outcome.close()

    def _read_with_retries(
        self,
        url: str,
        ctx: CancelContext | None,
        read: Callable[[httpx.Response, CancelContext | None], bytes],
    ) -> bytes:
        """Fetch a body with ``read``, retrying failures of the body read.

        A body read that breaks off or outlives the per-attempt timeout
        costs one attempt and is retried with backoff. Every other error
        propagates.
        """
        ctx = ctx or background()
        max_retries = self._config.max_retries
        log = self._log.bind(url=redact_url_credentials(url))
        last_error: Exception | None = None

        for attempt in range(max_retries):
            outcome = self.get_attempt(url, ctx)
            assert outcome.response is not None
            try:
                body = read(outcome.response, outcome.ctx)
            except CanceledError as e:
                raise self._fail(e) from None
            except BodyReadError as e:
                last_error = e
                if ctx.is_done:
                    log.info("fetch_canceled", attempt=attempt + 1)
                    raise self._fail(CanceledError()) from e
                log.info(
                    "body_read_retry",
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                if attempt == max_retries - 1:
                    break
                self._metrics.record_retry()
                try:
                    self._backoff.wait(ctx, attempt, url, max_retries, last_error=e)
                except CanceledError as canceled:
                    raise self._fail(canceled) from e
                continue
            except DecodeError as e:
                self._metrics.record_failure(e.error_class)
                raise
            finally:
                outcome.close()
            self._metrics.record_bytes(len(body))
            return body

        log.warning(
            "max_retries_reached",
            attempts=max_retries,
            last_error=str(last_error),
        )
        raise self._fail(
            MaxRetriesExceededError(url, max_retries, last_error)
        ) from last_error

    def get_bytes(self, url: str, ctx: CancelContext | None = None) -> bytes:
        """Fetch and decode a body.

        Failures while reading an already-started body, including running
        past the per-attempt timeout, are retried with backoff.

        Args:
            url: Absolute http(s) URL.
            ctx: Cancellation context.

        Returns:
            Decoded body bytes (UTF-8 for text-like content).
        """
        return self._read_with_retries(url, ctx, decode_body)

    def get_text(self, url: str, ctx: CancelContext | None = None) -> str:
        """Fetch a body and return it as text."""
        return self.get_bytes(url, ctx).decode("utf-8", errors="replace")

    def iter_decoded(
        self, url: str, ctx: CancelContext | None = None
    ) -> Iterator[bytes]:
        """Fetch a body as a stream of decoded chunks.

        The response is released when the iterator is exhausted or closed.
        """
        outcome = self.get_attempt(url, ctx)
        assert outcome.response is not None
        try:
            yield from iter_decoded_body(outcome.response, outcome.ctx)
        finally:
            outcome.close()

    def get_raw_text(self, url: str, ctx: CancelContext | None = None) -> str:
        """Fetch a body without charset normalization (e.g. CSV exports).

        The body is decompressed and decoded with the declared charset,
        UTF-8 if there is none.
        """
        charsets: list[str] = []

        def read(response: httpx.Response, deadline: CancelContext | None) -> bytes:
            charsets.append(response.charset_encoding or "utf-8")
            return b"".join(iter_decompressed_body(response, deadline))

        body = self._read_with_retries(url, ctx, read)
        return body.decode(charsets[-1], errors="replace")

    def post_bytes(
        self,
        url: str,
        content: bytes,
        ctx: CancelContext | None = None,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> bytes:
        """Send a POST request with retries and return the decoded body.

        POST retries use plain exponential backoff: no 404/422 policy and
        no outage recovery. A POST whose body read fails is not re-sent.

        Args:
            url: Absolute http(s) URL.
            content: Request body.
            ctx: Cancellation context.
            headers: Extra headers for this call only.

        Returns:
            Decoded response body.
        """
        validate_url(url)
        ctx = ctx or background()
        max_retries = self._config.max_retries
        self._wait_for_rate_limit(ctx)

        last_error: Exception | None = None
        for attempt in range(max_retries):
            outcome = self._attempt(
                ctx, url, attempt, method="POST", headers=headers, content=content
            )
            if outcome.is_success:
                assert outcome.response is not None
                try:
                    body = decode_body(outcome.response, outcome.ctx)
                finally:
                    outcome.close()
                self._metrics.record_bytes(len(body))
                return body

            outcome.close()
            last_error = outcome.error or StatusCodeError(
                outcome.status_code or 0, url
            )
            if ctx.is_done:
                raise self._fail(CanceledError()) from last_error
            if attempt == max_retries - 1:
                break
            self._metrics.record_retry()
            self._backoff.wait(
                ctx,
                attempt,
                url,
                max_retries,
                last_error=last_error,
                last_response=outcome.response,
            )

        self._log.warning(
            "max_retries_reached",
            url=redact_url_credentials(url),
            method="POST",
            headers=redact_headers(dict(self._client.headers)),
        )
        raise self._fail(
            MaxRetriesExceededError(url, max_retries, last_error)
        ) from last_error
