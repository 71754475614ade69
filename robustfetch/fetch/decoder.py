"""Response body decoding: gzip decompression and charset normalization.

Text-like bodies are always returned as UTF-8 bytes, whatever charset the
server declared. Binary bodies pass through verbatim.
"""

import codecs
import zlib
from collections.abc import Generator, Iterable, Iterator

import httpx
import structlog

from robustfetch.fetch.constants import FALLBACK_CHARSET
from robustfetch.fetch.context import CancelContext
from robustfetch.fetch.errors import (
    AttemptTimeoutError,
    BodyReadError,
    CanceledError,
    DecodeError,
)


logger = structlog.get_logger()

_GZIP_WBITS = 16 + zlib.MAX_WBITS
_DEFLATE_WBITS = zlib.MAX_WBITS
_CANONICAL_CHARSET = "utf-8"


def is_text_content_type(content_type: str) -> bool:
    """Check whether a Content-Type should be charset-normalized.

    Args:
        content_type: Raw Content-Type header value.

    Returns:
        True for text/*, and for any type mentioning json or xml.
    """
    content_type = content_type.strip().lower()
    return (
        content_type.startswith("text/")
        or "json" in content_type
        or "xml" in content_type
    )


def _content_encoding(response: httpx.Response) -> str:
    return response.headers.get("content-encoding", "").strip().lower()


def _decompress(chunks: Iterable[bytes], encoding: str) -> Iterator[bytes]:
    wbits = _GZIP_WBITS if encoding == "gzip" else _DEFLATE_WBITS
    decompressor = zlib.decompressobj(wbits)
    try:
        for chunk in chunks:
            data = decompressor.decompress(chunk)
            if data:
                yield data
        tail = decompressor.flush()
    except zlib.error as e:
        msg = f"failed to decompress {encoding} body: {e}"
        raise DecodeError(msg) from e
    if not decompressor.eof:
        msg = f"failed to decompress {encoding} body: unexpected end of stream"
        raise DecodeError(msg)
    if tail:
        yield tail


def _lookup_charset(charset: str) -> str:
    try:
        return codecs.lookup(charset).name
    except LookupError as e:
        msg = f"unsupported charset {charset!r}"
        raise DecodeError(msg) from e


def _transcode(chunks: Iterable[bytes], charset: str) -> Iterator[bytes]:
    decoder = codecs.getincrementaldecoder(charset)(errors="replace")
    for chunk in chunks:
        text = decoder.decode(chunk)
        if text:
            yield text.encode(_CANONICAL_CHARSET)
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail.encode(_CANONICAL_CHARSET)


def _sniff_charset(body: bytes) -> str:
    try:
        body.decode(_CANONICAL_CHARSET)
    except UnicodeDecodeError:
        return FALLBACK_CHARSET
    return _CANONICAL_CHARSET


def _normalize_charset(chunks: Iterable[bytes], declared: str | None) -> Iterator[bytes]:
    if declared:
        yield from _transcode(chunks, _lookup_charset(declared))
        return

    # Without a declaration the whole body is needed to choose a charset
    body = b"".join(chunks)
    charset = _sniff_charset(body)
    if charset == _CANONICAL_CHARSET:
        if body:
            yield body
        return
    yield from _transcode([body], charset)


def _read_raw(
    response: httpx.Response, deadline: CancelContext | None
) -> Iterator[bytes]:
    """Yield raw body bytes as they arrive, bounded by ``deadline``."""
    url = str(response.url)
    try:
        for chunk in response.iter_raw():
            if deadline is not None and deadline.is_done:
                if deadline.cancelled:
                    raise CanceledError
                raise AttemptTimeoutError(url)
            yield chunk
    except httpx.TimeoutException as e:
        raise AttemptTimeoutError(url) from e
    except httpx.TransportError as e:
        raise BodyReadError(url, str(e)) from e


def _iter_body(
    response: httpx.Response, deadline: CancelContext | None, normalize: bool
) -> Generator[bytes, None, None]:
    try:
        chunks: Iterable[bytes] = _read_raw(response, deadline)
        encoding = _content_encoding(response)
        if encoding in ("gzip", "deflate"):
            chunks = _decompress(chunks, encoding)

        content_type = response.headers.get("content-type", "")
        # compressed binary payloads are decompressed but never transcoded
        if normalize and is_text_content_type(content_type):
            chunks = _normalize_charset(chunks, response.charset_encoding)

        yield from chunks
    except DecodeError as e:
        logger.error(
            "decode_failed",
            component="decoder",
            url=str(response.url),
            content_type=response.headers.get("content-type"),
            content_encoding=response.headers.get("content-encoding"),
            error=str(e),
        )
        raise
    finally:
        response.close()


def iter_decoded_body(
    response: httpx.Response, deadline: CancelContext | None = None
) -> Generator[bytes, None, None]:
    """Iterate over the decoded body of a streamed response.

    The response is closed when the iterator is exhausted, fails or is
    closed early.

    Args:
        response: Response opened in stream mode.
        deadline: Optional context bounding the whole read. It is checked
            after every chunk.

    Yields:
        Decoded body chunks.

    Raises:
        DecodeError: If decompression or charset lookup fails.
        AttemptTimeoutError: If the deadline passes mid-body.
        BodyReadError: If the connection fails mid-body.
        CanceledError: If the deadline context is cancelled mid-body.
    """
    return _iter_body(response, deadline, normalize=True)


def iter_decompressed_body(
    response: httpx.Response, deadline: CancelContext | None = None
) -> Generator[bytes, None, None]:
    """Iterate over the decompressed body without any charset step.

    Used where the caller splits the bytes itself before decoding, so a
    multibyte character may safely straddle two chunks or two responses.
    Errors and closing behave as in ``iter_decoded_body``.
    """
    return _iter_body(response, deadline, normalize=False)


def decode_text(data: bytes, charset: str | None) -> str:
    """Decode a complete piece of text, such as one stream line.

    Args:
        data: Encoded bytes.
        charset: Declared charset, or None to sniff UTF-8 with the
            windows-1252 fallback.

    Returns:
        Decoded text; undecodable bytes become U+FFFD.

    Raises:
        DecodeError: If the declared charset is unknown.
    """
    codec = _lookup_charset(charset) if charset else _sniff_charset(data)
    return data.decode(codec, errors="replace")


def decode_body(
    response: httpx.Response, deadline: CancelContext | None = None
) -> bytes:
    """Read and decode a whole streamed response body.

    Args:
        response: Response opened in stream mode.
        deadline: Optional context bounding the read.

    Returns:
        Decoded body; UTF-8 for text-like content types.

    Raises:
        DecodeError: If decompression or charset lookup fails.
        BodyReadError: If reading the body fails or times out.
    """
    return b"".join(iter_decoded_body(response, deadline))
