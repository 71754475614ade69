"""CLI commands for fetching, resolving and tailing URLs."""

import json
import logging
import sys
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import NoReturn, TypeVar

import click
import structlog

from robustfetch import __version__
from robustfetch.fetch.client import RetryEngine
from robustfetch.fetch.config import (
    FetchConfig,
    apply_settings,
    sec_config,
    sec_installer_config,
    short_url_config,
)
from robustfetch.fetch.constants import DEFAULT_POLL_INTERVAL_SECONDS
from robustfetch.fetch.context import CancelContext
from robustfetch.fetch.errors import FetchError
from robustfetch.fetch.metrics import FetchMetrics
from robustfetch.fetch.redirect import RedirectChaser
from robustfetch.fetch.stream import JsonlStreamFetcher
from robustfetch.observability.logging import bind_request_context, configure_logging


logger = structlog.get_logger()

COMPONENT_CLI = "cli"

_PRESETS: dict[str, Callable[[], FetchConfig]] = {
    "default": FetchConfig,
    "sec": sec_config,
    "sec-installer": sec_installer_config,
    "short-url": short_url_config,
}

F = TypeVar("F", bound=Callable[..., None])


def _logging_options(func: F) -> F:
    """Attach the shared --json-logs/--verbose options."""
    func = click.option(
        "--verbose",
        "-v",
        is_flag=True,
        help="Enable verbose logging.",
    )(func)
    func = click.option(
        "--json-logs/--no-json-logs",
        default=False,
        help="Use JSON format for logs (default: false).",
    )(func)
    return func


def _setup_logging(
    command: str, url: str, *, json_logs: bool, verbose: bool
) -> structlog.typing.FilteringBoundLogger:
    """Configure logging and return a logger bound to this invocation.

    Args:
        command: CLI command name.
        url: Target URL.
        json_logs: Whether to emit JSON lines.
        verbose: Whether to log at DEBUG.

    Returns:
        Bound logger.
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    configure_logging(level=log_level, json_format=json_logs)
    bind_request_context(str(uuid.uuid4()), command=command)
    return logger.bind(component=COMPONENT_CLI, url=url)


def _build_config(preset: str, timeout: float | None) -> FetchConfig:
    config = apply_settings(_PRESETS[preset]())
    if timeout is not None:
        config = config.model_copy(update={"request_timeout_seconds": timeout})
    return config


def _fail(log: structlog.typing.FilteringBoundLogger, error: Exception) -> NoReturn:
    log.error("command_failed", error_type=type(error).__name__, error=str(error))
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """robustfetch: resilient HTTP fetching from the command line."""


@cli.command()
@click.argument("url")
@click.option(
    "--preset",
    type=click.Choice(sorted(_PRESETS)),
    default="default",
    show_default=True,
    help="Retry/rate-limit policy to use.",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Per-attempt timeout in seconds.",
)
@click.option(
    "--deadline",
    type=float,
    default=None,
    help="Overall deadline in seconds for the whole fetch.",
)
@click.option(
    "--out",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the body to this file instead of stdout.",
)
@click.option(
    "--metrics",
    "show_metrics",
    is_flag=True,
    help="Print fetch metrics as JSON to stderr when done.",
)
@_logging_options
def get(  # noqa: PLR0913
    url: str,
    preset: str,
    timeout: float | None,
    deadline: float | None,
    output_path: Path | None,
    show_metrics: bool,
    json_logs: bool,
    verbose: bool,
) -> None:
    """Fetch URL and write its decoded body."""
    log = _setup_logging("get", url, json_logs=json_logs, verbose=verbose)
    ctx = CancelContext(timeout_seconds=deadline)

    with RetryEngine(_build_config(preset, timeout)) as engine:
        try:
            body = engine.get_bytes(url, ctx)
        except KeyboardInterrupt:
            ctx.cancel()
            sys.exit(130)
        except FetchError as e:
            _fail(log, e)

    log.info("fetch_complete", bytes=len(body))
    if output_path is not None:
        output_path.write_bytes(body)
    else:
        click.get_binary_stream("stdout").write(body)
    if show_metrics:
        click.echo(json.dumps(FetchMetrics.get_instance().to_dict(), indent=2), err=True)


@cli.command()
@click.argument("url")
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Per-attempt timeout in seconds.",
)
@_logging_options
def resolve(url: str, timeout: float | None, json_logs: bool, verbose: bool) -> None:
    """Print the URL that URL finally resolves to."""
    log = _setup_logging("resolve", url, json_logs=json_logs, verbose=verbose)

    chaser = RedirectChaser(_build_config("short-url", timeout))
    try:
        result = chaser.get_bytes_with_final_url(url)
    except FetchError as e:
        _fail(log, e)
    finally:
        chaser.close()

    log.info("resolve_complete", final_url=result.final_url, redirected=result.redirected)
    click.echo(result.final_url)


@cli.command()
@click.argument("url")
@click.option(
    "--poll-interval",
    type=float,
    default=DEFAULT_POLL_INTERVAL_SECONDS,
    show_default=True,
    help="Seconds between polls while the stream is still growing.",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Per-attempt timeout in seconds.",
)
@_logging_options
def tail(
    url: str,
    poll_interval: float,
    timeout: float | None,
    json_logs: bool,
    verbose: bool,
) -> None:
    """Follow a growing JSONL stream at URL until its end sentinel."""
    log = _setup_logging("tail", url, json_logs=json_logs, verbose=verbose)
    ctx = CancelContext()

    with RetryEngine(_build_config("default", timeout)) as engine:
        fetcher = JsonlStreamFetcher(url, engine, poll_interval_seconds=poll_interval)
        lines = fetcher.fetch(ctx)
        try:
            for line in lines:
                click.echo(line)
        except KeyboardInterrupt:
            ctx.cancel()
        finally:
            lines.close()

    end = fetcher.end_message
    log.info(
        "tail_complete",
        offset=fetcher.cursor.offset,
        end_code=end.code if end is not None else None,
    )
    if fetcher.error is not None:
        _fail(log, fetcher.error)


if __name__ == "__main__":
    cli()
