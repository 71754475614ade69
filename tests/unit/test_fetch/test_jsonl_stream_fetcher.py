"""Unit tests for incremental JSONL stream fetching."""

import threading

import httpx
import pytest

from robustfetch.fetch.client import RetryEngine
from robustfetch.fetch.config import FetchConfig
from robustfetch.fetch.context import CancelContext
from robustfetch.fetch.errors import (
    BodyReadError,
    MaxRetriesExceededError,
    StatusCodeError,
)
from robustfetch.fetch.metrics import FetchMetrics
from robustfetch.fetch.state_machine import StreamState
from robustfetch.fetch.stream import JsonlStreamFetcher, parse_content_range_end
from tests.helpers.transport import Reply, ScriptedTransport


URL = "https://logs.example.com/job/42.jsonl"
START_LINE = '{"type":"start","processing_start_time":"t0"}'
END_LINE = '{"type":"end","code":0}'
FULL = f"{START_LINE}\n{END_LINE}\n".encode()
NDJSON = {"Content-Type": "application/x-ndjson"}


@pytest.fixture(autouse=True)
def reset_metrics() -> None:
    """Start every test with fresh metrics."""
    FetchMetrics.reset()


def partial(
    body: bytes,
    start: int,
    total: int | None = None,
    content_type: str = NDJSON["Content-Type"],
) -> Reply:
    """Build a 206 reply covering ``body`` from ``start``."""
    headers = {"Content-Type": content_type}
    if body:
        size = "*" if total is None else str(total)
        headers["Content-Range"] = f"bytes {start}-{start + len(body) - 1}/{size}"
    return Reply(206, body, headers=headers)


def make_fetcher(script: list) -> tuple[JsonlStreamFetcher, ScriptedTransport]:
    """Build a fetcher over a scripted transport with a fast poll interval."""
    transport = ScriptedTransport(script)
    engine = RetryEngine(
        FetchConfig(max_retries=1, backoff_factor_seconds=0),
        transport=transport,
    )
    return JsonlStreamFetcher(URL, engine, poll_interval_seconds=0.01), transport


class TestParseContentRangeEnd:
    """Tests for Content-Range parsing."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("bytes 0-49/50", 50),
            ("bytes 100-199/*", 200),
            (" bytes 5-5/1000 ", 6),
            ("bytes */50", None),
            ("garbage", None),
            ("", None),
            (None, None),
        ],
    )
    def test_values(self, value: str | None, expected: int | None) -> None:
        """Test that the next offset follows the last byte in the range."""
        assert parse_content_range_end(value) == expected


class TestJsonlStreamFetcher:
    """Tests for the polling protocol."""

    def test_line_split_across_two_partial_responses(self) -> None:
        """Test that a line split between two 206 replies is delivered whole."""
        split = len(START_LINE) + 8
        fetcher, transport = make_fetcher(
            [
                partial(FULL[:split], 0),
                partial(FULL[split:], split, total=len(FULL)),
                Reply(500),
            ]
        )

        lines = list(fetcher.fetch(CancelContext()))

        assert lines == [START_LINE, END_LINE]
        assert fetcher.start_message is not None
        assert fetcher.start_message.processing_start_time == "t0"
        assert fetcher.end_message is not None
        assert fetcher.end_message.code == 0
        assert transport.call_count == 2
        assert fetcher.state == StreamState.STREAM_DONE
        assert fetcher.error is None

    def test_range_header_sent_after_first_poll(self) -> None:
        """Test that the first poll has no Range and later polls resume."""
        split = len(START_LINE) + 1
        fetcher, transport = make_fetcher(
            [partial(FULL[:split], 0), partial(FULL[split:], split)]
        )

        list(fetcher.fetch())

        assert "range" not in transport.requests[0].headers
        assert transport.requests[1].headers["range"] == f"bytes={split}-"
        assert fetcher.cursor.offset == len(FULL)

    def test_cursor_advances_by_bytes_without_content_range(self) -> None:
        """Test that the cursor moves by the bytes received if no range is reported."""
        first = f"{START_LINE}\n".encode()
        fetcher, transport = make_fetcher(
            [
                Reply(206, first, headers=NDJSON),
                Reply(206, f"{END_LINE}\n".encode(), headers=NDJSON),
            ]
        )

        list(fetcher.fetch())

        assert transport.requests[1].headers["range"] == f"bytes={len(first)}-"

    def test_empty_partial_keeps_polling(self) -> None:
        """Test that a poll with no new data does not move the cursor."""
        first = f"{START_LINE}\n".encode()
        fetcher, transport = make_fetcher(
            [
                partial(first, 0),
                partial(b"", len(first)),
                partial(f"{END_LINE}\n".encode(), len(first)),
            ]
        )

        lines = list(fetcher.fetch())

        assert lines == [START_LINE, END_LINE]
        assert transport.call_count == 3
        ranges = [r.headers.get("range") for r in transport.requests]
        assert ranges == [None, f"bytes={len(first)}-", f"bytes={len(first)}-"]

    def test_full_response_forwarded_once(self) -> None:
        """Test that a 200 reply is forwarded as one item and ends the stream."""
        fetcher, transport = make_fetcher([Reply(200, FULL, headers=NDJSON)])

        items = list(fetcher.fetch())

        assert items == [FULL.decode()]
        assert transport.call_count == 1
        assert fetcher.state == StreamState.STREAM_DONE

    def test_failed_poll_ends_stream_with_error(self) -> None:
        """Test that an unrecoverable status ends the stream after earlier lines."""
        fetcher, transport = make_fetcher(
            [partial(f"{START_LINE}\n".encode(), 0), Reply(500)]
        )

        lines = list(fetcher.fetch())

        assert lines == [START_LINE]
        assert isinstance(fetcher.error, MaxRetriesExceededError)
        assert transport.call_count == 2
        assert fetcher.state == StreamState.STREAM_DONE

    def test_unexpected_success_status_ends_stream(self) -> None:
        """Test that a 2xx other than 200/206 ends the stream."""
        fetcher, _ = make_fetcher([Reply(204)])

        assert list(fetcher.fetch()) == []
        assert isinstance(fetcher.error, StatusCodeError)
        assert fetcher.error.status_code == 204

    def test_trailing_fragment_delivered_on_failure(self) -> None:
        """Test that an unterminated last line is not lost when the stream fails."""
        fetcher, _ = make_fetcher([partial(b"a\nb", 0), Reply(500)])

        assert list(fetcher.fetch()) == ["a", "b"]

    def test_malformed_sentinel_is_not_fatal(self) -> None:
        """Test that a broken start line is forwarded and the stream continues."""
        broken = '{"type":"start", this is not json'
        body = f"{broken}\nplain\n{END_LINE}\n".encode()
        fetcher, _ = make_fetcher([partial(body, 0)])

        lines = list(fetcher.fetch())

        assert lines == [broken, "plain", END_LINE]
        assert fetcher.start_message is None
        assert fetcher.end_message is not None

    def test_crlf_line_endings(self) -> None:
        """Test that CRLF terminators are stripped."""
        body = f"{START_LINE}\r\n{END_LINE}\r\n".encode()
        fetcher, _ = make_fetcher([partial(body, 0)])

        assert list(fetcher.fetch()) == [START_LINE, END_LINE]

    def test_stream_lines_counted(self) -> None:
        """Test that forwarded lines are recorded in metrics."""
        fetcher, _ = make_fetcher([partial(FULL, 0)])

        list(fetcher.fetch())

        assert FetchMetrics.get_instance().stream_lines_total == 2

    def test_single_use(self) -> None:
        """Test that a fetcher cannot be started twice."""
        fetcher, _ = make_fetcher([partial(FULL, 0)])
        list(fetcher.fetch())

        with pytest.raises(RuntimeError, match="single-use"):
            fetcher.fetch()


class TestStreamCancellation:
    """Tests for cancellation of a running stream."""

    def test_parent_cancel_ends_stream(self) -> None:
        """Test that cancelling the governing context stops polling."""
        fetcher, _ = make_fetcher(
            [partial(f"{START_LINE}\n".encode(), 0), partial(b"", 0)]
        )
        ctx = CancelContext()
        timer = threading.Timer(0.1, ctx.cancel)
        timer.start()

        lines = list(fetcher.fetch(ctx))

        assert lines == [START_LINE]
        assert fetcher.state == StreamState.STREAM_DONE
        assert fetcher.error is None

    def test_closing_iterator_stops_worker(self) -> None:
        """Test that abandoning the iterator cancels the polling loop."""
        fetcher, transport = make_fetcher(
            [partial(f"{START_LINE}\n".encode(), 0), partial(b"", 0)]
        )
        lines = fetcher.fetch()

        assert next(lines) == START_LINE
        lines.close()

        assert fetcher.state == StreamState.STREAM_DONE
        calls = transport.call_count
        threading.Event().wait(0.05)
        assert transport.call_count == calls

    def test_deadline_ends_stream(self) -> None:
        """Test that an expired deadline stops an endless stream."""
        fetcher, _ = make_fetcher([partial(b"", 0)])

        assert list(fetcher.fetch(CancelContext(timeout_seconds=0.1))) == []
        assert fetcher.state == StreamState.STREAM_DONE


class TestStreamLineBoundaries:
    """Tests for lines and sentinels that straddle poll boundaries."""

    @pytest.mark.parametrize(
        "content_type",
        ["application/x-ndjson; charset=utf-8", "application/x-ndjson"],
    )
    def test_multibyte_character_split_across_partials(self, content_type: str) -> None:
        """Test that a character cut between two replies arrives intact."""
        line = '{"msg":"café"}'
        encoded = f"{line}\n{END_LINE}\n".encode()
        cut = encoded.index("é".encode()) + 1
        fetcher, _ = make_fetcher(
            [
                partial(encoded[:cut], 0, content_type=content_type),
                partial(encoded[cut:], cut, content_type=content_type),
            ]
        )

        lines = list(fetcher.fetch())

        assert lines == [line, END_LINE]

    def test_declared_charset_applied_per_line(self) -> None:
        """Test that lines are decoded with the declared charset."""
        body = '{"msg":"café"}\n'.encode("latin-1") + f"{END_LINE}\n".encode()
        fetcher, _ = make_fetcher(
            [partial(body, 0, content_type="application/x-ndjson; charset=iso-8859-1")]
        )

        assert list(fetcher.fetch()) == ['{"msg":"café"}', END_LINE]

    def test_end_sentinel_without_newline(self) -> None:
        """Test that an end line written last without a newline ends the stream."""
        fetcher, transport = make_fetcher(
            [partial(f"{START_LINE}\n{END_LINE}".encode(), 0), Reply(416)]
        )

        lines = list(fetcher.fetch())

        assert lines == [START_LINE, END_LINE]
        assert fetcher.end_message is not None
        assert fetcher.end_message.code == 0
        assert fetcher.error is None
        assert transport.call_count == 1
        assert FetchMetrics.get_instance().stream_lines_total == 2

    def test_incomplete_end_sentinel_waits_for_rest(self) -> None:
        """Test that a half-written end line is completed by the next poll."""
        head = b'{"type":"end"'
        fetcher, transport = make_fetcher(
            [partial(head, 0), partial(b',"code":3}\n', len(head))]
        )

        lines = list(fetcher.fetch())

        assert lines == ['{"type":"end","code":3}']
        assert fetcher.end_message is not None
        assert fetcher.end_message.code == 3
        assert transport.call_count == 2
        assert transport.requests[1].headers["Range"] == f"bytes={len(head)}-"

    def test_broken_partial_body_ends_stream_with_error(self) -> None:
        """Test that a connection dropped mid-body ends the stream with an error."""

        class BrokenStream(httpx.SyncByteStream):
            def __iter__(self):  # type: ignore[no-untyped-def]
                yield f"{START_LINE}\n".encode()
                raise httpx.RemoteProtocolError("peer closed connection")

        def broken(request: httpx.Request) -> httpx.Response:
            return httpx.Response(206, headers=NDJSON, stream=BrokenStream())

        fetcher, _ = make_fetcher([broken])

        lines = list(fetcher.fetch())

        assert lines == [START_LINE]
        assert isinstance(fetcher.error, BodyReadError)
        assert fetcher.state == StreamState.STREAM_DONE


class TestStreamStart:
    """Tests for when polling begins."""

    def test_no_request_before_iteration(self) -> None:
        """Test that an iterator that is never consumed sends no request."""
        fetcher, transport = make_fetcher([partial(FULL, 0)])

        lines = fetcher.fetch()
        threading.Event().wait(0.05)

        assert transport.call_count == 0
        assert list(lines) == [START_LINE, END_LINE]
        assert transport.call_count == 1

    def test_unconsumed_iterator_starts_no_worker(self) -> None:
        """Test that dropping an unconsumed iterator leaves no thread behind."""
        fetcher, _ = make_fetcher([partial(b"", 0)])
        before = {t.ident for t in threading.enumerate()}

        lines = fetcher.fetch()
        lines.close()

        after = {t.name for t in threading.enumerate() if t.ident not in before}
        assert "jsonl-stream" not in after
