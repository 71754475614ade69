"""Redirect-aware fetching.

HTTP redirects are followed by the engine; this module adds tracking of
the final URL and one extra hop for client-side redirects (meta refresh
and ``location.replace``) found inside the page body.
"""

import re
from dataclasses import dataclass
from urllib.parse import urljoin

import httpx
import structlog

from robustfetch.fetch.client import RetryEngine
from robustfetch.fetch.config import FetchConfig, short_url_config
from robustfetch.fetch.context import CancelContext, background
from robustfetch.fetch.decoder import decode_body
from robustfetch.fetch.errors import FetchError, RedirectFetchError
from robustfetch.fetch.models import RedirectedContent
from robustfetch.fetch.redact import redact_url_credentials


logger = structlog.get_logger()

_META_REFRESH = re.compile(r'content="0;URL=(.+?)"')
_LOCATION_REPLACE = re.compile(r'location\.replace\("(.+?)"\)')


def extract_client_side_redirect(content: str) -> str | None:
    """Find a client-side redirect target in page content.

    Recognizes ``<meta http-equiv="refresh" content="0;URL=...">`` and
    ``location.replace("...")``; the meta refresh wins when both appear.

    Args:
        content: Page body as text.

    Returns:
        Target URL, or None when the page does not redirect.
    """
    for pattern in (_META_REFRESH, _LOCATION_REPLACE):
        match = pattern.search(content)
        if match:
            return match.group(1).strip('"')
    return None


@dataclass
class RedirectState:
    """State of one redirect-aware fetch.

    Client-side redirects are chased at most once: ``consume`` may only be
    called while ``consumed`` is False, which bounds the chase to a single
    extra hop even when two pages redirect to each other.
    """

    original_url: str
    final_url: str
    consumed: bool = False

    def record_hop(self, url: str) -> None:
        """Record a URL reached through an HTTP redirect."""
        self.final_url = url

    @property
    def can_scan(self) -> bool:
        """Check if a client-side redirect may still be followed."""
        return not self.consumed

    def consume(self, target: str) -> None:
        """Take the single permitted client-side redirect.

        Args:
            target: URL the page redirects to.

        Raises:
            RuntimeError: If the client-side redirect was already taken.
        """
        if self.consumed:
            msg = "client-side redirect already followed once"
            raise RuntimeError(msg)
        self.consumed = True
        self.final_url = target


class RedirectChaser:
    """Fetches a URL and reports where its content was finally served from."""

    def __init__(
        self,
        config: FetchConfig | None = None,
        *,
        engine: RetryEngine | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the chaser.

        Args:
            config: Fetch configuration, used when no engine is given.
            engine: Existing engine to share.
            transport: Optional transport override (used in tests).
        """
        self._engine = engine or RetryEngine(config, transport=transport)
        self._log = logger.bind(component="redirect")

    @property
    def engine(self) -> RetryEngine:
        """Get the underlying retry engine."""
        return self._engine

    def close(self) -> None:
        """Close the underlying engine."""
        self._engine.close()

    def _fetch(self, url: str, ctx: CancelContext, state: RedirectState) -> bytes:
        try:
            outcome = self._engine.get_attempt(
                url, ctx, on_redirect=state.record_hop
            )
        except FetchError as e:
            raise RedirectFetchError(url, e) from e
        assert outcome.response is not None
        try:
            # response.url is authoritative once the redirect chain has ended
            state.final_url = str(outcome.response.url)
            return decode_body(outcome.response, outcome.ctx)
        except FetchError as e:
            raise RedirectFetchError(url, e) from e
        finally:
            outcome.close()

    def get_bytes_with_final_url(
        self,
        url: str,
        ctx: CancelContext | None = None,
    ) -> RedirectedContent:
        """Fetch a URL, following HTTP and one client-side redirect.

        Args:
            url: Absolute http(s) URL.
            ctx: Cancellation context.

        Returns:
            Body and final URL; when the page redirected client-side, the
            body and URL of the redirect target.

        Raises:
            RedirectFetchError: If any fetch fails; the cause is preserved.
        """
        ctx = ctx or background()
        state = RedirectState(original_url=url, final_url=url)
        body = self._fetch(url, ctx, state)

        target = extract_client_side_redirect(body.decode("utf-8", errors="replace"))
        if target is not None and state.can_scan:
            target = urljoin(state.final_url, target)
            self._log.info(
                "client_side_redirect",
                url=redact_url_credentials(state.final_url),
                target=redact_url_credentials(target),
            )
            state.consume(target)
            body = self._fetch(target, ctx, state)

        return RedirectedContent(body=body, final_url=state.final_url, requested_url=url)


def short_url_chaser(transport: httpx.BaseTransport | None = None) -> RedirectChaser:
    """Build a chaser tuned for resolving short links."""
    return RedirectChaser(short_url_config(), transport=transport)
