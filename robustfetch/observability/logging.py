"""Structured logging configuration."""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any, TextIO

import structlog

from robustfetch.fetch.redact import redact_headers, redact_url_credentials


# Event fields that may carry a URL with embedded credentials
URL_FIELDS = ("url", "target", "final_url", "location")


def redact_event(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Strip credentials from URL and header fields of an event.

    Call sites already redact what they log; this processor catches
    anything that slips through, such as third-party context bindings.
    """
    for key in URL_FIELDS:
        value = event_dict.get(key)
        if isinstance(value, str):
            event_dict[key] = redact_url_credentials(value)
    headers = event_dict.get("headers")
    if isinstance(headers, dict):
        event_dict["headers"] = redact_headers(headers)
    return event_dict


def configure_logging(
    level: int = logging.INFO,
    output: TextIO = sys.stderr,
    json_format: bool = True,
) -> None:
    """Configure structured logging for the fetch layer.

    Args:
        level: Logging level (default: INFO).
        output: Output stream (default: stderr).
        json_format: Whether to use JSON format (default: True).
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_event,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_format:
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=output.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=True,
    )

    # httpx logs every request at INFO through the standard library
    logging.basicConfig(format="%(message)s", stream=output, level=level)
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def bind_request_context(request_id: str, **fields: Any) -> None:
    """Bind a request identifier (and any extra fields) to later log messages."""
    structlog.contextvars.bind_contextvars(request_id=request_id, **fields)


def clear_request_context() -> None:
    """Forget everything bound by ``bind_request_context``."""
    structlog.contextvars.clear_contextvars()
