"""Tests for newline-delimited JSON framing."""

from __future__ import annotations

import io
import json
import unittest

from lai_control.exceptions import InvalidJsonError, MessageTooLargeError
from lai_control.framing import (
    Envelope,
    Response,
    decode_envelope,
    decode_response,
    encode_envelope,
    encode_response,
    read_envelope,
    read_line,
    read_response,
    write_response,
)


class EnvelopeEncodingTests(unittest.TestCase):
    """Validate the request wire shape."""

    def test_envelope_round_trips_through_a_stream(self) -> None:
        envelope = Envelope(
            kind="ask",
            message="line one\nline two",
            payload={"prompt": "héllo", "new": True, "nested": [1, None]},
        )
        decoded = read_envelope(io.BytesIO(encode_envelope(envelope)))
        self.assertEqual(decoded, envelope)

    def test_encoding_ends_with_exactly_one_newline(self) -> None:
        data = encode_envelope(Envelope(kind="notify", message="a\nb\nc"))
        self.assertTrue(data.endswith(b"\n"))
        self.assertEqual(data.count(b"\n"), 1)

    def test_optional_fields_are_omitted(self) -> None:
        data = encode_envelope(Envelope(kind="last"))
        self.assertEqual(json.loads(data), {"type": "last"})

    def test_kind_is_sent_as_type(self) -> None:
        body = json.loads(encode_envelope(Envelope(kind="notify", message="hi")))
        self.assertEqual(body, {"type": "notify", "message": "hi"})

    def test_non_ascii_is_written_as_utf8(self) -> None:
        data = encode_envelope(Envelope(kind="notify", message="ünïcode ✓"))
        self.assertIn("ünïcode ✓".encode("utf-8"), data)


class EnvelopeDecodingTests(unittest.TestCase):
    """Validate rejection of malformed request lines."""

    def test_malformed_json_is_invalid(self) -> None:
        with self.assertRaises(InvalidJsonError):
            decode_envelope(b"{not json}\n")

    def test_missing_type_is_invalid(self) -> None:
        with self.assertRaises(InvalidJsonError):
            decode_envelope(b'{"message": "hi"}\n')

    def test_non_object_is_invalid(self) -> None:
        with self.assertRaises(InvalidJsonError):
            decode_envelope(b'["notify"]\n')

    def test_non_string_message_is_invalid(self) -> None:
        with self.assertRaises(InvalidJsonError):
            decode_envelope(b'{"type": "notify", "message": 5}\n')

    def test_bad_utf8_is_invalid(self) -> None:
        with self.assertRaises(InvalidJsonError):
            decode_envelope(b'{"type": "\xff"}\n')

    def test_invalid_json_wire_message(self) -> None:
        self.assertEqual(InvalidJsonError.wire_message, "Invalid JSON")


class ReadLineTests(unittest.TestCase):
    """Validate the per-line size cap and stream positioning."""

    def test_returns_none_at_eof(self) -> None:
        self.assertIsNone(read_line(io.BytesIO(b""), 64))

    def test_line_at_limit_is_accepted(self) -> None:
        line = b"x" * 63 + b"\n"
        self.assertEqual(read_line(io.BytesIO(line), 64), line)

    def test_oversized_line_is_rejected_and_drained(self) -> None:
        stream = io.BytesIO(b"y" * 200 + b"\n" + b'{"type":"last"}\n')
        with self.assertRaises(MessageTooLargeError):
            read_line(stream, 64)
        self.assertEqual(read_line(stream, 64), b'{"type":"last"}\n')

    def test_oversized_envelope_leaves_next_message_readable(self) -> None:
        big = encode_envelope(Envelope(kind="notify", message="z" * 300))
        stream = io.BytesIO(big + encode_envelope(Envelope(kind="last")))
        with self.assertRaises(MessageTooLargeError):
            read_envelope(stream, max_bytes=128)
        self.assertEqual(read_envelope(stream, max_bytes=128), Envelope(kind="last"))

    def test_too_large_wire_message(self) -> None:
        self.assertEqual(MessageTooLargeError.wire_message, "Message too large")

    def test_blank_lines_are_skipped(self) -> None:
        stream = io.BytesIO(b"\n  \n" + b'{"type":"notify","message":"x"}\n')
        self.assertEqual(
            read_envelope(stream), Envelope(kind="notify", message="x")
        )


class ResponseTests(unittest.TestCase):
    """Validate the response wire shape."""

    def test_error_response_shape(self) -> None:
        body = json.loads(encode_response(Response.error("No messages found")))
        self.assertEqual(
            body, {"status": "error", "data": {"error": "No messages found"}}
        )

    def test_ok_without_data_omits_data(self) -> None:
        self.assertEqual(json.loads(encode_response(Response.ok())), {"status": "ok"})

    def test_write_and_read_response(self) -> None:
        stream = io.BytesIO()
        write_response(stream, Response.ok({"content": "hi"}))
        stream.seek(0)
        response = read_response(stream)
        assert response is not None
        self.assertTrue(response.is_ok)
        self.assertEqual(response.data, {"content": "hi"})

    def test_unknown_status_is_invalid(self) -> None:
        with self.assertRaises(InvalidJsonError):
            decode_response(b'{"status": "maybe"}\n')

    def test_error_message_fallbacks(self) -> None:
        self.assertEqual(Response(status="error").error_message, "Unknown error")
        self.assertEqual(Response(status="error", data="boom").error_message, '"boom"')
        self.assertEqual(Response.error("bad").error_message, "bad")


if __name__ == "__main__":
    unittest.main()
