"""Content-Length framing for both sides of the bridge.

The client side speaks strict LSP framing. tsserver output is framed the same
way but some builds (and some wrappers) write bare newline-delimited JSON, so
the backend decoder runs with ``line_fallback=True``.
"""

from __future__ import annotations

import json
import logging
from typing import Iterator

from tsbridge.exceptions import DecodeError, FramingError
from tsbridge.json_types import JSONObject

logger = logging.getLogger(__name__)

HEADER_DELIMITER = b"\r\n\r\n"
_CONTENT_LENGTH = b"content-length"
_WHITESPACE = b" \t\r\n"


def encode_frame(message: JSONObject) -> bytes:
    payload = json.dumps(message).encode("utf-8")
    header = f"Content-Length: {len(payload)}\r\n\r\n".encode("ascii")
    return header + payload


def encode_line(message: JSONObject) -> bytes:
    return json.dumps(message).encode("utf-8") + b"\n"


def _content_length(header: bytes) -> int:
    for line in header.split(b"\r\n"):
        name, sep, value = line.partition(b":")
        if not sep or name.strip().lower() != _CONTENT_LENGTH:
            continue
        try:
            length = int(value.strip())
        except ValueError as exc:
            raise FramingError(f"invalid Content-Length value {value.strip()!r}") from exc
        if length < 0:
            raise FramingError(f"negative Content-Length {length}")
        return length
    raise FramingError("header block is missing Content-Length")


def decode_payload(body: bytes) -> JSONObject:
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise DecodeError(f"payload is a JSON {type(message).__name__}, not an object")
    return message


class FrameDecoder:
    """Incremental decoder over an append-only byte buffer.

    Bytes that do not yet form a complete frame stay buffered across calls
    to `feed`; nothing is parsed speculatively.
    """

    def __init__(self, *, line_fallback: bool = False, source: str = "client") -> None:
        self.line_fallback = line_fallback
        self.source = source
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()

    def feed(self, data: bytes) -> list[JSONObject]:
        self._buffer.extend(data)
        return list(self.drain())

    def drain(self) -> Iterator[JSONObject]:
        while self._buffer:
            if self.line_fallback:
                self._skip_whitespace()
                if not self._buffer:
                    return
            if self.line_fallback and not self._starts_with_header():
                line = self._take_line()
                if line is None:
                    return
                message = self._decode_line(line)
                if message is not None:
                    yield message
                continue
            end = self._buffer.find(HEADER_DELIMITER)
            if end < 0:
                return
            header = bytes(self._buffer[:end])
            body_start = end + len(HEADER_DELIMITER)
            try:
                length = _content_length(header)
            except FramingError as exc:
                logger.warning("%s framing error: %s; discarding %d header bytes", self.source, exc, body_start)
                del self._buffer[:body_start]
                continue
            body_end = body_start + length
            if len(self._buffer) < body_end:
                return
            body = bytes(self._buffer[body_start:body_end])
            del self._buffer[:body_end]
            try:
                yield decode_payload(body)
            except DecodeError as exc:
                logger.warning("%s dropped frame: %s", self.source, exc)

    def _skip_whitespace(self) -> None:
        skipped = len(self._buffer) - len(self._buffer.lstrip(_WHITESPACE))
        if skipped:
            del self._buffer[:skipped]

    def _starts_with_header(self) -> bool:
        # A buffered prefix of "Content-Length" counts as a header until proven otherwise.
        head = bytes(self._buffer[: len(_CONTENT_LENGTH)]).lower()
        return head == _CONTENT_LENGTH[: len(head)]

    def _take_line(self) -> bytes | None:
        newline = self._buffer.find(b"\n")
        if newline < 0:
            return None
        line = bytes(self._buffer[:newline])
        del self._buffer[: newline + 1]
        return line

    def _decode_line(self, line: bytes) -> JSONObject | None:
        text = line.strip()
        if not text:
            return None
        try:
            return decode_payload(text)
        except DecodeError:
            logger.debug("%s skipped non-protocol line: %r", self.source, text[:200])
            return None
