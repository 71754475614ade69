"""Token-bucket rate limiter shared by all callers of one engine."""

import threading
import time
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from robustfetch.fetch.context import CancelContext
from robustfetch.fetch.errors import CanceledError
from robustfetch.fetch.metrics import FetchMetrics


logger = structlog.get_logger()


class RateLimiterProtocol(Protocol):
    """Protocol for rate limiters.

    Allows dependency injection of rate limiter for testing.
    """

    def wait(self, ctx: CancelContext, tokens: int = 1) -> None:
        """Block until tokens are available or the context is done.

        Args:
            ctx: Governing cancellation context.
            tokens: Number of tokens to acquire.

        Raises:
            CanceledError: If the context is done before tokens are granted.
        """
        ...

    def try_acquire(self, tokens: int = 1) -> bool:
        """Try to acquire tokens without blocking.

        Args:
            tokens: Number of tokens to acquire.

        Returns:
            True if tokens were acquired, False otherwise.
        """
        ...


@dataclass
class TokenBucketRateLimiter:
    """Token bucket rate limiter.

    Tokens are replenished continuously at ``rate`` per second up to
    ``burst``. The bucket starts full, so at any instant the number of
    grants since creation is at most ``burst + rate * elapsed``.

    Thread-safe implementation for use by concurrent callers.

    Attributes:
        rate: Tokens added per second.
        burst: Maximum tokens in the bucket.
    """

    rate: float
    burst: int = 1

    _tokens: float = field(init=False, default=0.0)
    _last_refill: float = field(init=False, default=0.0)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _rate_limited_count: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        """Initialize the rate limiter state."""
        if self.rate <= 0:
            msg = f"rate must be positive, got {self.rate}"
            raise ValueError(msg)
        if self.burst < 1:
            msg = f"burst must be at least 1, got {self.burst}"
            raise ValueError(msg)
        self._tokens = float(self.burst)
        self._last_refill = time.monotonic()

    def _refill(self) -> None:
        """Refill tokens based on elapsed time.

        Must be called while holding the lock.
        """
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._last_refill = now

    def wait(self, ctx: CancelContext, tokens: int = 1) -> None:
        """Acquire tokens, blocking until available.

        Args:
            ctx: Governing cancellation context.
            tokens: Number of tokens to acquire.

        Raises:
            CanceledError: If the context is done while waiting.
            ValueError: If more tokens are requested than the burst allows.
        """
        if tokens > self.burst:
            msg = f"requested {tokens} tokens exceeds burst {self.burst}"
            raise ValueError(msg)

        waited = False
        while True:
            if ctx.is_done:
                raise CanceledError("context canceled while waiting for rate limiter")
            with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    if waited:
                        FetchMetrics.get_instance().record_rate_limit_wait()
                    return
                wait_time = (tokens - self._tokens) / self.rate
                if not waited:
                    self._rate_limited_count += 1
                    waited = True

            # Release lock before sleeping
            logger.debug("rate_limit_wait", component="fetch", wait_s=wait_time)
            if ctx.wait(wait_time):
                raise CanceledError("context canceled while waiting for rate limiter")

    def try_acquire(self, tokens: int = 1) -> bool:
        """Try to acquire tokens without blocking.

        Args:
            tokens: Number of tokens to acquire.

        Returns:
            True if tokens were acquired, False otherwise.
        """
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            self._rate_limited_count += 1
            return False

    @property
    def rate_limited_count(self) -> int:
        """Get the number of rate-limited events."""
        with self._lock:
            return self._rate_limited_count

    def get_available_tokens(self) -> float:
        """Get the current number of available tokens.

        Returns:
            Current token count.
        """
        with self._lock:
            self._refill()
            return self._tokens
