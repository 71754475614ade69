"""Data models for the HTTP fetch layer."""

from dataclasses import dataclass

import httpx
from pydantic import BaseModel, ConfigDict, Field

from robustfetch.fetch.constants import HTTP_STATUS_OK_MAX, HTTP_STATUS_OK_MIN
from robustfetch.fetch.context import CancelContext


@dataclass
class AttemptOutcome:
    """Result of one request/response cycle inside the retry loop.

    Exactly one of ``response`` and ``error`` is set. ``ctx`` is the
    per-attempt context that bounds the body read of a successful attempt.
    """

    attempt: int
    elapsed_s: float
    response: httpx.Response | None = None
    error: Exception | None = None
    ctx: CancelContext | None = None

    @property
    def status_code(self) -> int | None:
        """Get the response status code, if a response arrived."""
        return self.response.status_code if self.response is not None else None

    @property
    def is_success(self) -> bool:
        """Check if the attempt produced a 2xx response."""
        code = self.status_code
        return code is not None and HTTP_STATUS_OK_MIN <= code < HTTP_STATUS_OK_MAX

    def close(self) -> None:
        """Release the response body and the attempt context, if any."""
        if self.response is not None:
            self.response.close()
        if self.ctx is not None:
            self.ctx.release()


class RedirectedContent(BaseModel):
    """Body of a redirect-aware fetch and the URL it was finally served from."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    body: bytes = Field(description="Decoded response body")
    final_url: str = Field(min_length=1, description="URL after all redirects")
    requested_url: str = Field(min_length=1, description="URL originally requested")

    @property
    def redirected(self) -> bool:
        """Check if the final URL differs from the requested one."""
        return self.final_url != self.requested_url


class StartMessage(BaseModel):
    """Start-of-stream sentinel line."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: str
    processing_start_time: str | None = None
    audio_url: str | None = None
    file_format_version: str | None = None


class EndMessage(BaseModel):
    """End-of-stream sentinel line."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: str
    processing_end_time: str | None = None
    code: int | None = None
    system_reason: str | None = None
    user_reason: str | None = None


@dataclass
class StreamCursor:
    """Progress of one incremental stream.

    Attributes:
        offset: Last acknowledged byte offset; never decreases.
        start_message: Parsed start sentinel, if seen.
        end_message: Parsed end sentinel, if seen.
    """

    offset: int = 0
    start_message: StartMessage | None = None
    end_message: EndMessage | None = None

    def advance_to(self, offset: int) -> None:
        """Move the offset forward.

        Args:
            offset: New byte offset.

        Raises:
            ValueError: If the offset would move backwards.
        """
        if offset < self.offset:
            msg = f"stream cursor cannot move backwards: {self.offset} -> {offset}"
            raise ValueError(msg)
        self.offset = offset
