"""Resilient outbound HTTP fetch layer.

This module provides cancellable HTTP fetch operations with:
- Configurable retries with exponential backoff and a long pause on 429
- A token-bucket rate limit shared by all callers of one engine
- Network outage detection and bounded recovery
- gzip decompression and charset normalization of bodies
- Final-URL tracking and one level of client-side redirect chasing
- Range-based polling of growing JSONL streams
"""

from robustfetch.fetch.backoff import BackoffPolicy
from robustfetch.fetch.client import RetryEngine, validate_url
from robustfetch.fetch.config import (
    FetchConfig,
    NetworkRecoveryPolicy,
    ProbeConfig,
    RateLimit,
    apply_settings,
    sec_config,
    sec_installer_config,
    short_url_config,
)
from robustfetch.fetch.context import CancelContext, background
from robustfetch.fetch.decoder import (
    decode_body,
    decode_text,
    iter_decoded_body,
    iter_decompressed_body,
)
from robustfetch.fetch.errors import (
    AttemptTimeoutError,
    BodyReadError,
    CanceledError,
    DecodeError,
    FetchError,
    FetchErrorClass,
    InvalidURLError,
    MaxRetriesExceededError,
    NetworkUnavailableAfterMaxWaitError,
    NotFoundNoRetryError,
    RedirectFetchError,
    StatusCodeError,
    StreamParseError,
    UnprocessableNoRetryError,
    is_not_found_no_retry,
)
from robustfetch.fetch.headers import browser_headers, rss_feed_headers, sec_bot_headers
from robustfetch.fetch.metrics import FetchMetrics
from robustfetch.fetch.models import (
    AttemptOutcome,
    EndMessage,
    RedirectedContent,
    StartMessage,
    StreamCursor,
)
from robustfetch.fetch.outage import NetworkOutageProbe, looks_like_network_issue
from robustfetch.fetch.protocols import (
    ChunkFetcher,
    Fetcher,
    FetcherWithContext,
    FetcherWithFinalURL,
)
from robustfetch.fetch.rate_limiter import RateLimiterProtocol, TokenBucketRateLimiter
from robustfetch.fetch.redact import redact_headers, redact_url_credentials
from robustfetch.fetch.redirect import (
    RedirectChaser,
    extract_client_side_redirect,
    short_url_chaser,
)
from robustfetch.fetch.simple import simple_fetch_bytes
from robustfetch.fetch.state_machine import StreamState
from robustfetch.fetch.stream import JsonlStreamFetcher


__all__ = [
    # Engine
    "RetryEngine",
    "AttemptOutcome",
    "validate_url",
    "BackoffPolicy",
    "TokenBucketRateLimiter",
    "RateLimiterProtocol",
    "NetworkOutageProbe",
    "looks_like_network_issue",
    # Context
    "CancelContext",
    "background",
    # Config
    "FetchConfig",
    "RateLimit",
    "NetworkRecoveryPolicy",
    "ProbeConfig",
    "apply_settings",
    "sec_config",
    "sec_installer_config",
    "short_url_config",
    "sec_bot_headers",
    "browser_headers",
    "rss_feed_headers",
    # Decoding
    "decode_body",
    "iter_decoded_body",
    "iter_decompressed_body",
    "decode_text",
    # Redirects
    "RedirectChaser",
    "RedirectedContent",
    "extract_client_side_redirect",
    "short_url_chaser",
    # Streams
    "JsonlStreamFetcher",
    "StreamCursor",
    "StreamState",
    "StartMessage",
    "EndMessage",
    # Simple fetch
    "simple_fetch_bytes",
    # Protocols
    "Fetcher",
    "FetcherWithContext",
    "FetcherWithFinalURL",
    "ChunkFetcher",
    # Errors
    "FetchError",
    "FetchErrorClass",
    "CanceledError",
    "InvalidURLError",
    "StatusCodeError",
    "NotFoundNoRetryError",
    "UnprocessableNoRetryError",
    "MaxRetriesExceededError",
    "NetworkUnavailableAfterMaxWaitError",
    "BodyReadError",
    "AttemptTimeoutError",
    "DecodeError",
    "StreamParseError",
    "RedirectFetchError",
    "is_not_found_no_retry",
    # Metrics
    "FetchMetrics",
    # Redaction
    "redact_headers",
    "redact_url_credentials",
]
