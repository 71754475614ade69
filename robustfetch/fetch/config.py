"""Configuration models for the HTTP fetch layer."""

from typing import Annotated
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from robustfetch.fetch.constants import (
    DEFAULT_BACKOFF_FACTOR_SECONDS,
    DEFAULT_MAX_REDIRECTS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_NETWORK_UNAVAILABLE_BACKOFF_SECONDS,
    DEFAULT_NETWORK_UNAVAILABLE_MAX_WAIT_SECONDS,
    DEFAULT_PROBE_TARGETS,
    DEFAULT_PROBE_TIMEOUT_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_USER_AGENT,
    SEC_ATTEMPTS,
    SEC_BACKOFF_ON_429_SECONDS,
    SEC_BACKOFF_SECONDS,
    SEC_BURST_SIZE,
    SEC_REQUESTS_PER_SECOND,
    SHORT_URL_ATTEMPTS,
    SHORT_URL_BACKOFF_ON_429_SECONDS,
    SHORT_URL_BACKOFF_SECONDS,
)
from robustfetch.fetch.headers import sec_bot_headers
from robustfetch.settings import AppSettings, get_settings


def _default_headers() -> dict[str, str]:
    return {"User-Agent": DEFAULT_USER_AGENT}


class RateLimit(BaseModel):
    """Token-bucket rate limit shared by all callers of one engine."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rate: Annotated[float, Field(gt=0.0, description="Tokens added per second")]
    burst: Annotated[int, Field(ge=1, description="Bucket capacity")]


class NetworkRecoveryPolicy(BaseModel):
    """Extra retry phase entered when the whole network looks down.

    Applies only on the final scheduled attempt. The engine sleeps
    ``backoff_seconds`` between recovery attempts and gives up once
    ``max_wait_seconds`` have elapsed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backoff_seconds: Annotated[float, Field(gt=0.0)] = (
        DEFAULT_NETWORK_UNAVAILABLE_BACKOFF_SECONDS
    )
    max_wait_seconds: Annotated[float, Field(gt=0.0)] = (
        DEFAULT_NETWORK_UNAVAILABLE_MAX_WAIT_SECONDS
    )


class ProbeConfig(BaseModel):
    """Liveness probe targets used to tell a local outage from a remote one."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    targets: tuple[str, ...] = Field(
        default=DEFAULT_PROBE_TARGETS,
        min_length=1,
        description="Independent, highly-available URLs",
    )
    timeout_seconds: Annotated[float, Field(gt=0.0, le=120.0)] = (
        DEFAULT_PROBE_TIMEOUT_SECONDS
    )

    @field_validator("targets")
    @classmethod
    def validate_absolute(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Ensure every probe target is an absolute http(s) URL."""
        for target in v:
            parsed = urlparse(target)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                msg = f"Probe target must be an absolute http(s) URL: {target!r}"
                raise ValueError(msg)
        return v


class FetchConfig(BaseModel):
    """Configuration for one retry engine.

    Immutable after construction. The rate limit, if any, is materialized
    as a single token bucket owned by the engine and shared by all of its
    concurrent callers.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    headers: dict[str, str] = Field(default_factory=_default_headers)
    max_retries: Annotated[int, Field(ge=1, le=100)] = DEFAULT_MAX_RETRIES
    backoff_factor_seconds: Annotated[float, Field(ge=0.0)] = (
        DEFAULT_BACKOFF_FACTOR_SECONDS
    )
    rate_limit: RateLimit | None = None
    request_timeout_seconds: Annotated[float, Field(gt=0.0, le=3600.0)] = (
        DEFAULT_REQUEST_TIMEOUT_SECONDS
    )
    no_retry_on_404: bool = False
    no_retry_on_422: bool = False
    long_backoff_on_429_seconds: Annotated[float, Field(gt=0.0)] | None = None
    network_recovery: NetworkRecoveryPolicy | None = None
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    max_redirects: Annotated[int, Field(ge=0, le=50)] = DEFAULT_MAX_REDIRECTS
    log_redirects: bool = False


def sec_config() -> FetchConfig:
    """Fetch policy for SEC EDGAR.

    As of July 27, 2021 the SEC limits automated clients to 10 requests per
    second. A 429 triggers a ten minute pause and 404s are not retried.

    Returns:
        New FetchConfig.
    """
    return FetchConfig(
        headers=sec_bot_headers(),
        max_retries=SEC_ATTEMPTS,
        backoff_factor_seconds=SEC_BACKOFF_SECONDS,
        rate_limit=RateLimit(rate=SEC_REQUESTS_PER_SECOND, burst=SEC_BURST_SIZE),
        long_backoff_on_429_seconds=SEC_BACKOFF_ON_429_SECONDS,
        no_retry_on_404=True,
    )


def sec_installer_config() -> FetchConfig:
    """SEC policy plus network outage recovery, for long-running installs."""
    return sec_config().model_copy(
        update={"network_recovery": NetworkRecoveryPolicy()},
    )


def short_url_config() -> FetchConfig:
    """Policy for resolving short links through redirects."""
    return FetchConfig(
        max_retries=SHORT_URL_ATTEMPTS,
        backoff_factor_seconds=SHORT_URL_BACKOFF_SECONDS,
        no_retry_on_404=True,
        no_retry_on_422=True,
        long_backoff_on_429_seconds=SHORT_URL_BACKOFF_ON_429_SECONDS,
        log_redirects=True,
    )


def apply_settings(
    config: FetchConfig,
    settings: AppSettings | None = None,
) -> FetchConfig:
    """Overlay environment settings onto a config.

    Only settings that are explicitly set replace config values.

    Args:
        config: Base configuration.
        settings: Settings to apply; loaded from the environment if omitted.

    Returns:
        New FetchConfig (or ``config`` itself when nothing is set).
    """
    settings = settings or get_settings()
    update: dict[str, object] = {}

    if settings.user_agent:
        update["headers"] = {**config.headers, "User-Agent": settings.user_agent}
    if settings.request_timeout_seconds is not None:
        update["request_timeout_seconds"] = settings.request_timeout_seconds

    probe_update: dict[str, object] = {}
    if settings.probe_targets:
        probe_update["targets"] = tuple(settings.probe_targets)
    if settings.probe_timeout_seconds is not None:
        probe_update["timeout_seconds"] = settings.probe_timeout_seconds
    if probe_update:
        update["probe"] = ProbeConfig.model_validate(
            {**config.probe.model_dump(), **probe_update}
        )

    if not update:
        return config
    # Round-trip through validation so bad environment values are rejected
    return FetchConfig.model_validate({**config.model_dump(), **update})
