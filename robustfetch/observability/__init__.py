"""Observability module for logging."""

from robustfetch.observability.logging import (
    bind_request_context,
    clear_request_context,
    configure_logging,
    redact_event,
)


__all__ = [
    "bind_request_context",
    "clear_request_context",
    "configure_logging",
    "redact_event",
]
