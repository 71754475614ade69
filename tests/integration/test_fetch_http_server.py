"""Integration tests for the fetch layer against a local HTTP server."""

import gzip
import threading
import time
from collections.abc import Generator
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from robustfetch.fetch.client import RetryEngine
from robustfetch.fetch.config import FetchConfig
from robustfetch.fetch.context import CancelContext
from robustfetch.fetch.errors import AttemptTimeoutError, MaxRetriesExceededError
from robustfetch.fetch.metrics import FetchMetrics
from robustfetch.fetch.redirect import RedirectChaser
from robustfetch.fetch.state_machine import StreamState
from robustfetch.fetch.stream import JsonlStreamFetcher


pytestmark = pytest.mark.integration


def get_server_url(server: HTTPServer, path: str = "/resource") -> str:
    """Get the URL for a test server.

    Args:
        server: The HTTP server instance.
        path: The URL path.

    Returns:
        Complete URL for the server.
    """
    host, port = server.server_address[0], server.server_address[1]
    if isinstance(host, bytes):
        host = host.decode("utf-8")
    return f"http://{host}:{port}{path}"


def start_server(handler: type[BaseHTTPRequestHandler]) -> HTTPServer:
    """Serve ``handler`` on an ephemeral port from a daemon thread."""
    server = HTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=server.serve_forever)
    thread.daemon = True
    thread.start()
    return server


class GzipLatin1Handler(BaseHTTPRequestHandler):
    """Serves a gzip-compressed ISO-8859-1 page."""

    text = "Café crème, naïve façade. " * 50

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        """Suppress log messages during tests."""

    def do_GET(self) -> None:  # noqa: N802
        """Return the compressed page when the client accepts gzip."""
        body = self.text.encode("iso-8859-1")
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; charset=ISO-8859-1")
        if "gzip" in self.headers.get("Accept-Encoding", ""):
            body = gzip.compress(body)
            self.send_header("Content-Encoding", "gzip")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


class FlakyHandler(BaseHTTPRequestHandler):
    """Returns 503 for the first ``error_count`` requests, then 200."""

    request_count: int = 0
    error_count: int = 2

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        """Suppress log messages during tests."""

    def do_GET(self) -> None:  # noqa: N802
        """Handle GET requests, failing until error_count is reached."""
        FlakyHandler.request_count += 1

        if FlakyHandler.request_count <= FlakyHandler.error_count:
            self.send_response(503)
            self.send_header("Content-Length", "0")
            self.end_headers()
            return

        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", "2")
        self.end_headers()
        self.wfile.write(b"OK")


class RedirectingHandler(BaseHTTPRequestHandler):
    """HTTP redirect to a page that redirects again with a meta refresh."""

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        """Suppress log messages during tests."""

    def _send(self, status: int, body: bytes = b"", location: str | None = None) -> None:
        self.send_response(status)
        if location is not None:
            self.send_header("Location", location)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self) -> None:  # noqa: N802
        """Route /short -> /landing -> (meta refresh) /article."""
        if self.path == "/short":
            self._send(302, location="/landing")
        elif self.path == "/landing":
            self._send(
                200,
                b'<html><head><meta http-equiv="refresh" '
                b'content="0;URL=/article"></head></html>',
            )
        elif self.path == "/article":
            self._send(200, b"<html>the article</html>")
        else:
            self._send(404)


class TricklingHandler(BaseHTTPRequestHandler):
    """Sends headers at once, then one body byte every ``interval`` seconds."""

    body: bytes = b"hello, world"
    interval: float = 0.3

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        """Suppress log messages during tests."""

    def do_GET(self) -> None:  # noqa: N802
        """Trickle the body until done or the client hangs up."""
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(self.body)))
        self.end_headers()
        try:
            for i in range(len(self.body)):
                self.wfile.write(self.body[i : i + 1])
                self.wfile.flush()
                time.sleep(self.interval)
        except (BrokenPipeError, ConnectionResetError):
            pass  # client gave up on the attempt


class GrowingLogHandler(BaseHTTPRequestHandler):
    """A JSONL log that grows by ``step`` bytes on every request.

    Honors ``Range: bytes=N-`` with 206 replies covering what is
    currently available.
    """

    content: bytes = b""
    available: int = 0
    step: int = 17
    ranges: list[str | None] = []

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        """Suppress log messages during tests."""

    def do_GET(self) -> None:  # noqa: N802
        """Serve the currently available suffix of the log."""
        cls = GrowingLogHandler
        cls.available = min(len(cls.content), cls.available + cls.step)
        header = self.headers.get("Range")
        cls.ranges.append(header)

        start = 0
        if header is not None:
            start = int(header.removeprefix("bytes=").rstrip("-"))
        body = cls.content[start : cls.available]

        self.send_response(206)
        self.send_header("Content-Type", "application/x-ndjson")
        if body:
            end = start + len(body) - 1
            self.send_header("Content-Range", f"bytes {start}-{end}/*")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


@pytest.fixture(autouse=True)
def reset_metrics() -> None:
    """Start every test with fresh metrics."""
    FetchMetrics.reset()


@pytest.fixture
def gzip_server() -> Generator[HTTPServer]:
    """Start a server returning gzip Latin-1 text."""
    server = start_server(GzipLatin1Handler)
    yield server
    server.shutdown()


@pytest.fixture
def flaky_server() -> Generator[HTTPServer]:
    """Start a server that fails twice before succeeding."""
    FlakyHandler.request_count = 0
    FlakyHandler.error_count = 2
    server = start_server(FlakyHandler)
    yield server
    server.shutdown()


@pytest.fixture
def redirect_server() -> Generator[HTTPServer]:
    """Start a server with an HTTP then client-side redirect chain."""
    server = start_server(RedirectingHandler)
    yield server
    server.shutdown()


@pytest.fixture
def trickling_server() -> Generator[HTTPServer]:
    """Start a server that drips its body out slowly."""
    server = start_server(TricklingHandler)
    yield server
    server.shutdown()


@pytest.fixture
def log_server() -> Generator[HTTPServer]:
    """Start a server exposing a growing JSONL log."""
    lines = [
        '{"type":"start","processing_start_time":"2024-01-01T00:00:00Z"}',
        *(f'{{"step":{i},"message":"working"}}' for i in range(5)),
        '{"type":"end","code":0,"processing_end_time":"2024-01-01T00:01:00Z"}',
    ]
    GrowingLogHandler.content = ("\n".join(lines) + "\n").encode()
    GrowingLogHandler.available = 0
    GrowingLogHandler.step = 17
    GrowingLogHandler.ranges = []
    server = start_server(GrowingLogHandler)
    yield server
    server.shutdown()


class TestRetryEngineOverHttp:
    """End-to-end behavior of the retry engine."""

    def test_gzip_latin1_body_decoded_to_utf8(self, gzip_server: HTTPServer) -> None:
        """Test that compressed Latin-1 text arrives as UTF-8."""
        with RetryEngine(FetchConfig(max_retries=1)) as engine:
            body = engine.get_bytes(get_server_url(gzip_server))

        assert body == GzipLatin1Handler.text.encode("utf-8")

    def test_retries_until_success(self, flaky_server: HTTPServer) -> None:
        """Test that transient 503s are retried."""
        config = FetchConfig(max_retries=3, backoff_factor_seconds=0.01)

        with RetryEngine(config) as engine:
            body = engine.get_bytes(get_server_url(flaky_server))

        assert body == b"OK"
        assert FlakyHandler.request_count == 3
        assert FetchMetrics.get_instance().http_retry_total == 2

    def test_gives_up_after_max_retries(self, flaky_server: HTTPServer) -> None:
        """Test that the attempt budget is respected."""
        config = FetchConfig(max_retries=2, backoff_factor_seconds=0.01)

        with RetryEngine(config) as engine, pytest.raises(MaxRetriesExceededError):
            engine.get_bytes(get_server_url(flaky_server))

        assert FlakyHandler.request_count == 2


class TestRedirectChaserOverHttp:
    """End-to-end redirect resolution."""

    def test_http_then_meta_refresh(self, redirect_server: HTTPServer) -> None:
        """Test that both redirect kinds are followed to the article."""
        chaser = RedirectChaser(FetchConfig(max_retries=1))
        try:
            result = chaser.get_bytes_with_final_url(
                get_server_url(redirect_server, "/short")
            )
        finally:
            chaser.close()

        assert result.final_url == get_server_url(redirect_server, "/article")
        assert result.body == b"<html>the article</html>"
        assert result.redirected is True


class TestJsonlStreamOverHttp:
    """End-to-end incremental stream polling."""

    def test_follows_growing_log_to_end(self, log_server: HTTPServer) -> None:
        """Test that a log served in small ranges is delivered line by line."""
        expected = GrowingLogHandler.content.decode().splitlines()
        ctx = CancelContext(timeout_seconds=30.0)

        with RetryEngine(FetchConfig(max_retries=1)) as engine:
            fetcher = JsonlStreamFetcher(
                get_server_url(log_server, "/job.jsonl"),
                engine,
                poll_interval_seconds=0.01,
            )
            lines = list(fetcher.fetch(ctx))

        assert lines == expected
        assert fetcher.error is None
        assert fetcher.state == StreamState.STREAM_DONE
        assert fetcher.cursor.offset == len(GrowingLogHandler.content)
        assert fetcher.end_message is not None
        assert fetcher.end_message.code == 0
        assert GrowingLogHandler.ranges[0] is None
        assert all(r is not None for r in GrowingLogHandler.ranges[1:])

    def test_multibyte_lines_served_one_byte_at_a_time(
        self, log_server: HTTPServer
    ) -> None:
        """Test that accented lines survive polls that cut every character."""
        lines = [
            '{"type":"start","processing_start_time":"t0"}',
            '{"msg":"café crème brûlée"}',
            '{"type":"end","code":0}',
        ]
        GrowingLogHandler.content = ("\n".join(lines) + "\n").encode()
        GrowingLogHandler.step = 1

        with RetryEngine(FetchConfig(max_retries=1)) as engine:
            fetcher = JsonlStreamFetcher(
                get_server_url(log_server, "/job.jsonl"),
                engine,
                poll_interval_seconds=0.001,
            )
            received = list(fetcher.fetch(CancelContext(timeout_seconds=30.0)))

        assert received == lines
        assert fetcher.error is None


class TestAttemptTimeoutOverHttp:
    """End-to-end per-attempt timeout."""

    def test_trickling_body_cut_off_at_request_timeout(
        self, trickling_server: HTTPServer
    ) -> None:
        """Test that a slowly dripping body cannot outlive the request timeout."""
        config = FetchConfig(max_retries=1, request_timeout_seconds=0.5)

        start = time.monotonic()
        with RetryEngine(config) as engine, pytest.raises(
            MaxRetriesExceededError
        ) as exc_info:
            engine.get_bytes(get_server_url(trickling_server))
        elapsed = time.monotonic() - start

        assert isinstance(exc_info.value.__cause__, AttemptTimeoutError)
        # the full body would take 3.6s
        assert elapsed < 2.0
