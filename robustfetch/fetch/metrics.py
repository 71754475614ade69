"""Metrics collection for the HTTP fetch layer."""

import threading
from dataclasses import dataclass, field
from typing import ClassVar

from robustfetch.fetch.errors import FetchErrorClass


@dataclass
class FetchMetrics:
    """Metrics for HTTP fetch operations.

    Singleton class that tracks request counts, retries, outage
    recoveries and failures. Updates are guarded by a lock because engines
    are shared between threads.
    """

    http_requests_total: dict[int, int] = field(default_factory=dict)
    http_retry_total: int = 0
    http_failures_total: dict[str, int] = field(default_factory=dict)
    http_bytes_total: int = 0
    http_duration_ms_total: float = 0.0
    http_request_count: int = 0
    network_recovery_attempts_total: int = 0
    rate_limit_waits_total: int = 0
    stream_lines_total: int = 0

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _instance: ClassVar["FetchMetrics | None"] = None

    @classmethod
    def get_instance(cls) -> "FetchMetrics":
        """Get singleton metrics instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset metrics (primarily for testing)."""
        cls._instance = None

    def record_request(self, status_code: int, duration_ms: float) -> None:
        """Record a completed HTTP attempt.

        Args:
            status_code: HTTP status code.
            duration_ms: Attempt duration in milliseconds.
        """
        with self._lock:
            self.http_requests_total[status_code] = (
                self.http_requests_total.get(status_code, 0) + 1
            )
            self.http_duration_ms_total += duration_ms
            self.http_request_count += 1

    def record_bytes(self, bytes_received: int) -> None:
        """Record decoded body bytes delivered to a caller."""
        with self._lock:
            self.http_bytes_total += bytes_received

    def record_retry(self) -> None:
        """Record a retry attempt."""
        with self._lock:
            self.http_retry_total += 1

    def record_network_recovery_attempt(self) -> None:
        """Record an attempt made inside the outage recovery loop."""
        with self._lock:
            self.network_recovery_attempts_total += 1

    def record_rate_limit_wait(self) -> None:
        """Record a caller that had to wait for a rate-limit token."""
        with self._lock:
            self.rate_limit_waits_total += 1

    def record_stream_line(self) -> None:
        """Record a line forwarded by an incremental stream."""
        with self._lock:
            self.stream_lines_total += 1

    def record_failure(self, error_class: FetchErrorClass) -> None:
        """Record a fetch failure.

        Args:
            error_class: Classification of the failure.
        """
        key = error_class.value
        with self._lock:
            self.http_failures_total[key] = self.http_failures_total.get(key, 0) + 1

    def to_dict(self) -> dict[str, int | float | dict[str, int] | dict[int, int]]:
        """Convert metrics to dictionary.

        Returns:
            Dictionary of metric name to value.
        """
        with self._lock:
            return {
                "http_requests_total": dict(self.http_requests_total),
                "http_retry_total": self.http_retry_total,
                "http_failures_total": dict(self.http_failures_total),
                "http_bytes_total": self.http_bytes_total,
                "http_duration_ms_total": self.http_duration_ms_total,
                "http_request_count": self.http_request_count,
                "network_recovery_attempts_total": self.network_recovery_attempts_total,
                "rate_limit_waits_total": self.rate_limit_waits_total,
                "stream_lines_total": self.stream_lines_total,
            }

    @property
    def avg_duration_ms(self) -> float:
        """Calculate average attempt duration.

        Returns:
            Average duration in milliseconds.
        """
        if self.http_request_count == 0:
            return 0.0
        return self.http_duration_ms_total / self.http_request_count
