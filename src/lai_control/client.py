"""Client side of the loopback control channel.

Every call opens a fresh connection, sends exactly one envelope, reads
exactly one response line and closes. There is no request id on the wire:
one request per connection is what keeps a response matched to its request.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import socket
import time
from typing import Any

from .exceptions import FramingError, ProtocolError, TransportError
from .framing import (
    CLIENT_TIMEOUT_SECONDS,
    DEFAULT_HOST,
    DEFAULT_PORT,
    MAX_MESSAGE_BYTES,
    Envelope,
    Response,
    read_response,
    write_envelope,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollResult:
    """Outcome of a poll-once-after-delay ``ask``.

    ``fresh`` is False when the message polled afterwards is the same one that
    was already the newest before the request was sent, i.e. the reply has
    not landed yet.
    """

    message: dict[str, Any] | None
    fresh: bool


class ControlClient:
    """Blocking one-shot requests against a running control plane."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        timeout: float = CLIENT_TIMEOUT_SECONDS,
        max_message_bytes: int = MAX_MESSAGE_BYTES,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.max_message_bytes = max_message_bytes

    def call(
        self, kind: str, message: str | None = None, payload: Any = None
    ) -> Response:
        """Send one envelope and return the raw response, error status included."""
        envelope = Envelope(kind=kind, message=message, payload=payload)
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as exc:
            raise TransportError(
                f"Failed to connect to {self.host}:{self.port}: {exc}"
            ) from exc

        with sock:
            try:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                with sock.makefile("rwb") as stream:
                    write_envelope(stream, envelope)
                    response = read_response(stream, self.max_message_bytes)
            except FramingError as exc:
                raise ProtocolError(f"Failed to parse response: {exc}") from exc
            except OSError as exc:
                raise TransportError(f"Request {kind!r} failed: {exc}") from exc

        if response is None:
            raise TransportError("Connection closed before a response was received")
        LOGGER.debug(
            "client.response",
            extra={"event": "client.response", "kind": kind, "status": response.status},
        )
        return response

    def request(
        self, kind: str, message: str | None = None, payload: Any = None
    ) -> Any:
        """Like ``call`` but return ``data`` and raise ProtocolError on error status."""
        response = self.call(kind, message=message, payload=payload)
        if not response.is_ok:
            raise ProtocolError(response.error_message)
        return response.data

    def notify(self, message: str) -> None:
        self.request("notify", message=message)

    def ask(self, payload: dict[str, Any]) -> None:
        self.request("ask", payload=payload)

    def last_message(self) -> dict[str, Any]:
        data = self.request("last")
        if not isinstance(data, dict):
            raise ProtocolError("Malformed response for last message")
        return data

    def create(
        self, content: str, conversation_id: str | None = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"content": content}
        if conversation_id:
            payload["conversation_id"] = conversation_id
        data = self.request("create", payload=payload)
        if not isinstance(data, dict):
            raise ProtocolError("Malformed response for create")
        return data

    def _last_message_id(self) -> str | None:
        response = self.call("last")
        if response.is_ok and isinstance(response.data, dict):
            message_id = response.data.get("id")
            return str(message_id) if message_id is not None else None
        return None

    def ask_and_poll(self, payload: dict[str, Any], delay: float) -> PollResult:
        """Send ``ask``, wait ``delay`` seconds, then read ``last`` once."""
        baseline = self._last_message_id()
        self.ask(payload)
        if delay > 0:
            time.sleep(delay)
        response = self.call("last")
        if not response.is_ok or not isinstance(response.data, dict):
            return PollResult(message=None, fresh=False)
        message = response.data
        fresh = baseline is None or str(message.get("id")) != baseline
        return PollResult(message=message, fresh=fresh)
