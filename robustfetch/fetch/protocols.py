"""Protocol interfaces for fetch clients.

Consumers depend on these rather than on ``RetryEngine`` so that any client
with matching methods, including test doubles, can be swapped in.
"""

from collections.abc import Iterator
from typing import Protocol, runtime_checkable

from robustfetch.fetch.context import CancelContext
from robustfetch.fetch.models import RedirectedContent


@runtime_checkable
class Fetcher(Protocol):
    """Fetches a whole body."""

    def get_bytes(self, url: str) -> bytes:
        """Fetch a URL and return its decoded body."""
        ...


@runtime_checkable
class FetcherWithContext(Protocol):
    """Fetches a whole body under a cancellation context."""

    def get_bytes(self, url: str, ctx: CancelContext | None = None) -> bytes:
        """Fetch a URL and return its decoded body.

        Args:
            url: Absolute http(s) URL.
            ctx: Cancellation context.

        Returns:
            Decoded body bytes.

        Raises:
            FetchError: If the fetch fails.
        """
        ...


@runtime_checkable
class FetcherWithFinalURL(Protocol):
    """Fetches a body and reports the URL it was finally served from."""

    def get_bytes_with_final_url(
        self, url: str, ctx: CancelContext | None = None
    ) -> RedirectedContent:
        """Fetch a URL following redirects."""
        ...


@runtime_checkable
class ChunkFetcher(Protocol):
    """Fetches a body as a stream of decoded chunks."""

    def iter_decoded(
        self, url: str, ctx: CancelContext | None = None
    ) -> Iterator[bytes]:
        """Iterate over the decoded body of a URL."""
        ...
