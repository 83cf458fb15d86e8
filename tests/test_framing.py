from __future__ import annotations

import json
import logging

from hypothesis import given, settings
from hypothesis import strategies as st

from tsbridge.framing import FrameDecoder, decode_payload, encode_frame, encode_line
from tsbridge.exceptions import DecodeError, FramingError
from tsbridge import framing

_json_leaf = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-(2**53), max_value=2**53),
    st.text(max_size=20),
)
_json_values = st.recursive(
    _json_leaf,
    lambda children: st.one_of(
        st.lists(children, max_size=4),
        st.dictionaries(st.text(max_size=8), children, max_size=4),
    ),
    max_leaves=12,
)
_json_objects = st.dictionaries(st.text(max_size=8), _json_values, max_size=5)


@given(_json_objects)
def test_encode_then_decode_yields_the_message(message: dict) -> None:
    decoder = FrameDecoder()
    assert decoder.feed(encode_frame(message)) == [message]
    assert decoder.pending == 0


@settings(max_examples=25, deadline=None)
@given(st.lists(_json_objects, min_size=1, max_size=3))
def test_any_split_point_yields_each_message_once(messages: list[dict]) -> None:
    stream = b"".join(encode_frame(message) for message in messages)
    for split in range(len(stream) + 1):
        decoder = FrameDecoder()
        decoded = decoder.feed(stream[:split]) + decoder.feed(stream[split:])
        assert decoded == messages


def test_byte_at_a_time_feed() -> None:
    message = {"jsonrpc": "2.0", "id": 1, "method": "textDocument/hover"}
    decoder = FrameDecoder()
    decoded = []
    for byte in encode_frame(message):
        decoded.extend(decoder.feed(bytes([byte])))
    assert decoded == [message]


def test_content_length_counts_utf8_bytes() -> None:
    message = {"text": "héllo wörld ✓"}
    frame = encode_frame(message)
    header, _, body = frame.partition(b"\r\n\r\n")
    assert header == f"Content-Length: {len(body)}".encode("ascii")

    raw_body = json.dumps(message, ensure_ascii=False).encode("utf-8")
    assert len(raw_body) > len(json.dumps(message, ensure_ascii=False))
    raw = f"Content-Length: {len(raw_body)}\r\n\r\n".encode("ascii") + raw_body
    decoder = FrameDecoder()
    assert decoder.feed(raw[:-2]) == []
    assert decoder.feed(raw[-2:]) == [message]


def test_header_names_are_case_insensitive_and_extra_headers_ignored() -> None:
    body = b'{"id": 3}'
    raw = (
        b"Content-Type: application/vscode-jsonrpc; charset=utf-8\r\n"
        b"content-length: " + str(len(body)).encode() + b"\r\n\r\n" + body
    )
    assert FrameDecoder().feed(raw) == [{"id": 3}]


def test_missing_content_length_resynchronises(caplog) -> None:
    good = {"id": 1}
    raw = b"X-Junk: 1\r\n\r\n" + encode_frame(good)
    with caplog.at_level(logging.WARNING, logger=framing.__name__):
        assert FrameDecoder().feed(raw) == [good]
    assert "missing Content-Length" in caplog.text


def test_invalid_json_body_is_dropped_and_scanning_continues(caplog) -> None:
    bad = b"Content-Length: 7\r\n\r\n{broken"
    good = {"ok": True}
    decoder = FrameDecoder()
    with caplog.at_level(logging.WARNING, logger=framing.__name__):
        assert decoder.feed(bad + encode_frame(good)) == [good]
    assert "dropped frame" in caplog.text


def test_non_object_payload_is_a_decode_error() -> None:
    try:
        decode_payload(b"[1, 2]")
    except DecodeError as exc:
        assert "not an object" in str(exc)
    else:
        raise AssertionError("Expected DecodeError for array payload")


def test_incomplete_body_waits_for_more_bytes() -> None:
    frame = encode_frame({"seq": 1})
    decoder = FrameDecoder()
    assert decoder.feed(frame[:-1]) == []
    assert decoder.pending == len(frame) - 1
    assert decoder.feed(frame[-1:]) == [{"seq": 1}]


def test_negative_content_length_is_rejected() -> None:
    try:
        framing._content_length(b"Content-Length: -4")
    except FramingError as exc:
        assert "negative" in str(exc)
    else:
        raise AssertionError("Expected FramingError for negative length")


def test_line_fallback_reads_newline_delimited_json() -> None:
    decoder = FrameDecoder(line_fallback=True, source="tsserver")
    raw = encode_line({"seq": 0, "type": "event", "event": "typingsInstallerPid"})
    raw += encode_frame({"seq": 1, "type": "response", "request_seq": 1, "success": True}) + b"\n"
    assert [message["seq"] for message in decoder.feed(raw)] == [0, 1]
    assert decoder.pending == 0


def test_line_fallback_skips_noise_lines() -> None:
    decoder = FrameDecoder(line_fallback=True, source="tsserver")
    raw = b"\n\n\nsome banner text\n" + encode_line({"seq": 2})
    assert decoder.feed(raw) == [{"seq": 2}]


def test_line_fallback_keeps_partial_line_buffered() -> None:
    decoder = FrameDecoder(line_fallback=True)
    line = encode_line({"seq": 5})
    assert decoder.feed(line[:4]) == []
    assert decoder.feed(line[4:]) == [{"seq": 5}]


def test_line_fallback_treats_partial_header_prefix_as_header() -> None:
    decoder = FrameDecoder(line_fallback=True)
    frame = encode_frame({"seq": 9})
    assert decoder.feed(frame[:5]) == []
    assert decoder.feed(frame[5:]) == [{"seq": 9}]


def test_reset_discards_buffered_bytes() -> None:
    decoder = FrameDecoder()
    decoder.feed(b"Content-Length: 10\r\n\r\n{")
    decoder.reset()
    assert decoder.pending == 0
    assert decoder.feed(encode_frame({"a": 1})) == [{"a": 1}]
