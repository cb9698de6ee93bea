"""Newline-delimited JSON framing for the loopback control channel.

Every message is one UTF-8 JSON object followed by a single ``\\n``. The
request object is ``{"type": kind, "message"?: str, "payload"?: any}`` and
the response object is ``{"status": "ok" | "error", "data"?: any}``.
Optional fields are omitted rather than sent as ``null``.
"""

from __future__ import annotations

import json
from typing import Any, BinaryIO, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import InvalidJsonError, MessageTooLargeError

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 39871
MAX_MESSAGE_BYTES = 1024 * 1024
CONNECTION_TIMEOUT_SECONDS = 30
CLIENT_TIMEOUT_SECONDS = 10

_DRAIN_CHUNK = 64 * 1024


class Envelope(BaseModel):
    """One request line sent by the CLI."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    kind: str = Field(alias="type")
    message: str | None = None
    payload: Any = None

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {"type": self.kind}
        if self.message is not None:
            body["message"] = self.message
        if self.payload is not None:
            body["payload"] = self.payload
        return body


class Response(BaseModel):
    """One response line written by the server."""

    model_config = ConfigDict(frozen=True)

    status: Literal["ok", "error"]
    data: Any = None

    @classmethod
    def ok(cls, data: Any = None) -> Response:
        return cls(status="ok", data=data)

    @classmethod
    def error(cls, message: str) -> Response:
        return cls(status="error", data={"error": message})

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    @property
    def error_message(self) -> str:
        """Return the server's error text, or a fallback when it sent none."""
        if isinstance(self.data, dict) and "error" in self.data:
            return str(self.data["error"])
        if self.data is not None:
            return json.dumps(self.data, ensure_ascii=False)
        return "Unknown error"

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.status}
        if self.data is not None:
            body["data"] = self.data
        return body


def _encode(body: dict[str, Any]) -> bytes:
    # ASCII-only output: control characters and lone surrogates are escaped,
    # so the only newline is the frame end and encoding cannot fail.
    return (json.dumps(body, separators=(",", ":")) + "\n").encode("ascii")


def encode_envelope(envelope: Envelope) -> bytes:
    return _encode(envelope.to_wire())


def encode_response(response: Response) -> bytes:
    return _encode(response.to_wire())


def _load_object(line: bytes) -> dict[str, Any]:
    try:
        decoded = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidJsonError(str(exc)) from exc
    if not isinstance(decoded, dict):
        raise InvalidJsonError("Expected a JSON object.")
    return decoded


def decode_envelope(line: bytes) -> Envelope:
    """Parse one request line; any shape problem is reported as invalid JSON."""
    try:
        return Envelope.model_validate(_load_object(line))
    except ValidationError as exc:
        raise InvalidJsonError(str(exc)) from exc


def decode_response(line: bytes) -> Response:
    try:
        return Response.model_validate(_load_object(line))
    except ValidationError as exc:
        raise InvalidJsonError(str(exc)) from exc


def read_line(stream: BinaryIO, max_bytes: int = MAX_MESSAGE_BYTES) -> bytes | None:
    """Read one frame, returning ``None`` at EOF.

    An oversized line is consumed up to and including its newline before
    ``MessageTooLargeError`` is raised, so the next read starts cleanly on the
    following message. The limit counts the terminating newline.
    """
    line = stream.readline(max_bytes + 1)
    if not line:
        return None
    if len(line) <= max_bytes:
        return line
    if not line.endswith(b"\n"):
        while True:
            rest = stream.readline(_DRAIN_CHUNK)
            if not rest or rest.endswith(b"\n"):
                break
    raise MessageTooLargeError(f"Message exceeds {max_bytes} bytes")


def read_envelope(
    stream: BinaryIO, max_bytes: int = MAX_MESSAGE_BYTES
) -> Envelope | None:
    """Read the next envelope, skipping blank lines; ``None`` means the peer closed."""
    while True:
        line = read_line(stream, max_bytes)
        if line is None:
            return None
        if line.strip():
            return decode_envelope(line)


def read_response(
    stream: BinaryIO, max_bytes: int = MAX_MESSAGE_BYTES
) -> Response | None:
    line = read_line(stream, max_bytes)
    if line is None:
        return None
    return decode_response(line)


def write_envelope(stream: BinaryIO, envelope: Envelope) -> None:
    stream.write(encode_envelope(envelope))
    stream.flush()


def write_response(stream: BinaryIO, response: Response) -> None:
    stream.write(encode_response(response))
    stream.flush()
