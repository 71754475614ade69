"""Incremental fetching of growing line-delimited JSON streams.

The remote file is polled with ``Range: bytes=<offset>-`` requests. Each
206 reply is drained line by line and forwarded to the consumer; the stream
ends at an ``{"type":"end"...}`` sentinel line, after a one-shot 200 reply,
or on error or cancellation.
"""

import queue
import re
import threading
from collections.abc import Generator

import httpx
import structlog
from pydantic import ValidationError

from robustfetch.fetch.client import RetryEngine
from robustfetch.fetch.constants import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    HTTP_STATUS_OK,
    HTTP_STATUS_PARTIAL_CONTENT,
    STREAM_END_PREFIX,
    STREAM_END_TYPE,
    STREAM_QUEUE_SIZE,
    STREAM_START_PREFIX,
)
from robustfetch.fetch.context import CancelContext, background
from robustfetch.fetch.decoder import decode_text, iter_decompressed_body
from robustfetch.fetch.errors import (
    CanceledError,
    FetchError,
    StatusCodeError,
    StreamParseError,
)
from robustfetch.fetch.metrics import FetchMetrics
from robustfetch.fetch.models import (
    AttemptOutcome,
    EndMessage,
    StartMessage,
    StreamCursor,
)
from robustfetch.fetch.redact import redact_url_credentials
from robustfetch.fetch.state_machine import StreamState, StreamStateMachine


logger = structlog.get_logger()

_CONTENT_RANGE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)")
_QUEUE_POLL_SECONDS = 0.05
_DONE = object()
_END_PREFIX_BYTES = STREAM_END_PREFIX.encode()


def parse_content_range_end(value: str | None) -> int | None:
    """Get the offset just past a Content-Range, e.g. 50 for ``bytes 0-49/50``.

    Args:
        value: Raw Content-Range header value.

    Returns:
        Next byte offset, or None if the header is missing or malformed.
    """
    if not value:
        return None
    match = _CONTENT_RANGE.match(value.strip())
    if match is None:
        return None
    return int(match.group(2)) + 1


class JsonlStreamFetcher:
    """Single-use fetcher for one growing JSONL stream.

    The polling loop runs on a background thread and hands lines to the
    consumer through a bounded queue. Closing the iterator returned by
    ``fetch`` cancels the loop.
    """

    def __init__(
        self,
        url: str,
        engine: RetryEngine,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the fetcher.

        Args:
            url: Absolute http(s) URL of the stream.
            engine: Engine used for every poll.
            poll_interval_seconds: Sleep between polls without an end sentinel.
        """
        self._url = url
        self._engine = engine
        self._poll_interval = poll_interval_seconds
        self._cursor = StreamCursor()
        self._machine = StreamStateMachine(redact_url_credentials(url))
        self._queue: queue.Queue[object] = queue.Queue(maxsize=STREAM_QUEUE_SIZE)
        self._finished = threading.Event()
        self._fragment = b""
        self._charset: str | None = None
        self._started = False
        self._error: Exception | None = None
        self._metrics = FetchMetrics.get_instance()
        self._log = logger.bind(component="stream", url=redact_url_credentials(url))

    @property
    def cursor(self) -> StreamCursor:
        """Get the stream cursor."""
        return self._cursor

    @property
    def start_message(self) -> StartMessage | None:
        """Get the parsed start sentinel, if one was seen."""
        return self._cursor.start_message

    @property
    def end_message(self) -> EndMessage | None:
        """Get the parsed end sentinel, if one was seen."""
        return self._cursor.end_message

    @property
    def state(self) -> StreamState:
        """Get the current stream state."""
        return self._machine.state

    @property
    def error(self) -> Exception | None:
        """Get the error that ended the stream, if any."""
        return self._error

    def fetch(self, ctx: CancelContext | None = None) -> Generator[str, None, None]:
        """Iterate over stream lines.

        Polling starts on the first ``next()`` of the returned iterator, so
        an iterator that is never consumed sends no request.

        Args:
            ctx: Cancellation context governing the whole stream.

        Yields:
            Lines in order, without their line terminator.

        Raises:
            RuntimeError: If called more than once.
        """
        if self._started:
            msg = "stream fetcher is single-use; create a new one"
            raise RuntimeError(msg)
        self._started = True
        return self._consume(ctx or background())

    def _consume(self, ctx: CancelContext) -> Generator[str, None, None]:
        loop_ctx = ctx.child()
        worker = threading.Thread(
            target=self._run,
            args=(loop_ctx,),
            name="jsonl-stream",
            daemon=True,
        )
        worker.start()
        try:
            while True:
                try:
                    item = self._queue.get(timeout=_QUEUE_POLL_SECONDS)
                except queue.Empty:
                    if self._finished.is_set() and self._queue.empty():
                        return
                    continue
                if item is _DONE:
                    return
                assert isinstance(item, str)
                yield item
        finally:
            loop_ctx.cancel()
            loop_ctx.release()
            worker.join(timeout=self._poll_interval + 1.0)

    def _emit(self, ctx: CancelContext, item: object) -> bool:
        """Put an item on the queue, giving up when the context is done."""
        while not ctx.is_done:
            try:
                self._queue.put(item, timeout=_QUEUE_POLL_SECONDS)
            except queue.Full:
                continue
            return True
        return False

    def _run(self, ctx: CancelContext) -> None:
        try:
            self._poll_loop(ctx)
        except CanceledError:
            self._log.info("stream_canceled", offset=self._cursor.offset)
        except (FetchError, httpx.HTTPError, ValueError) as e:
            self._error = e
            self._log.error(
                "stream_failed",
                error_type=type(e).__name__,
                error=str(e),
                offset=self._cursor.offset,
            )
        finally:
            if self._fragment and not ctx.is_done:
                self._emit(ctx, decode_text(self._fragment, self._charset))
                self._fragment = b""
            self._machine.to_done()
            self._finished.set()
            try:
                self._queue.put_nowait(_DONE)
            except queue.Full:
                pass  # consumer notices _finished once it drains the queue
            self._log.info("stream_finished", offset=self._cursor.offset)

    def _poll_loop(self, ctx: CancelContext) -> None:
        while not self._machine.is_terminal:
            if ctx.is_done:
                self._log.info("stream_canceled", offset=self._cursor.offset)
                return

            headers = None
            if self._cursor.offset > 0:
                headers = {"Range": f"bytes={self._cursor.offset}-"}

            outcome = self._engine.get_attempt(self._url, ctx, headers=headers)
            assert outcome.response is not None
            status = outcome.response.status_code

            if status == HTTP_STATUS_OK:
                self._log.info("stream_range_unsupported", offset=self._cursor.offset)
                self._read_full(ctx, outcome)
                return

            if status != HTTP_STATUS_PARTIAL_CONTENT:
                outcome.close()
                self._log.error("stream_unexpected_status", status_code=status)
                self._error = StatusCodeError(status, self._url)
                return

            self._machine.to_draining()
            if self._drain(ctx, outcome):
                return
            self._machine.to_polling()

            if ctx.wait(self._poll_interval):
                self._log.info("stream_canceled", offset=self._cursor.offset)
                return

    def _read_full(self, ctx: CancelContext, outcome: AttemptOutcome) -> None:
        """Forward a whole 200 body as one item."""
        assert outcome.response is not None
        charset = outcome.response.charset_encoding
        try:
            body = b"".join(iter_decompressed_body(outcome.response, outcome.ctx))
        finally:
            outcome.close()
        self._metrics.record_bytes(len(body))
        # The full body supersedes any partial line held from earlier polls
        self._fragment = b""
        self._emit(ctx, decode_text(body, charset))

    def _drain(self, ctx: CancelContext, outcome: AttemptOutcome) -> bool:
        """Forward the complete lines of one partial body.

        Lines are split on raw bytes and decoded one at a time, so a
        multibyte character cut by a poll boundary stays intact.

        Returns:
            True if the stream is over (end sentinel or cancellation).
        """
        response = outcome.response
        assert response is not None
        start_offset = self._cursor.offset
        ended = False
        chunks = iter_decompressed_body(response, outcome.ctx)
        try:
            self._charset = response.charset_encoding
            # fail on an unknown charset before any bytes are held
            decode_text(b"", self._charset)
            for chunk in chunks:
                self._metrics.record_bytes(len(chunk))
                self._fragment += chunk
                *lines, self._fragment = self._fragment.split(b"\n")
                for raw in lines:
                    line = decode_text(raw.rstrip(b"\r"), self._charset)
                    if not self._emit(ctx, line):
                        return True
                    self._metrics.record_stream_line()
                    if self._handle_sentinel(line):
                        ended = True
                        break
                if ended:
                    break
        finally:
            chunks.close()
            outcome.close()

        next_offset = parse_content_range_end(response.headers.get("content-range"))
        if next_offset is None:
            next_offset = start_offset + response.num_bytes_downloaded
        self._cursor.advance_to(next_offset)

        if not ended and self._fragment.startswith(_END_PREFIX_BYTES):
            ended = self._take_unterminated_end(ctx)

        if ended:
            # Anything after the end sentinel is not part of the stream
            self._fragment = b""
            self._machine.to_done()
            return True

        self._log.debug(
            "stream_partial_drained",
            offset=self._cursor.offset,
            pending_bytes=len(self._fragment),
        )
        return False

    def _take_unterminated_end(self, ctx: CancelContext) -> bool:
        """Accept an end sentinel that is the last thing written, without ``\\n``.

        The held fragment is only taken as the end sentinel when it already
        parses as a complete end message; otherwise it stays pending.

        Returns:
            True if the stream is over.
        """
        line = decode_text(self._fragment.rstrip(b"\r"), self._charset)
        try:
            end = EndMessage.model_validate_json(line)
        except ValidationError:
            return False
        if end.type != STREAM_END_TYPE:
            return False

        if not self._emit(ctx, line):
            return True
        self._metrics.record_stream_line()
        self._fragment = b""
        self._cursor.end_message = end
        self._log.info("stream_end_sentinel", code=end.code, terminated=False)
        return True

    def _handle_sentinel(self, line: str) -> bool:
        """Parse start/end sentinels.

        Returns:
            True if the line is a valid end sentinel.
        """
        try:
            if line.startswith(STREAM_START_PREFIX):
                self._cursor.start_message = StartMessage.model_validate_json(line)
                self._log.info(
                    "stream_started",
                    processing_start_time=self._cursor.start_message.processing_start_time,
                )
            elif line.startswith(STREAM_END_PREFIX):
                end = EndMessage.model_validate_json(line)
                self._cursor.end_message = end
                if end.type == STREAM_END_TYPE:
                    self._log.info("stream_end_sentinel", code=end.code)
                    return True
        except ValidationError as e:
            parse_error = StreamParseError(line, f"{e.error_count()} validation errors")
            self._log.warning("stream_sentinel_malformed", error=str(parse_error))
        return False
