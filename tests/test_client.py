"""Tests for the one-shot control client."""

from __future__ import annotations

import socket
import threading
import unittest

from lai_control.client import ControlClient
from lai_control.dispatcher import Dispatcher
from lai_control.events import ASK_EVENT, Event, EventBus
from lai_control.exceptions import ProtocolError, TransportError
from lai_control.server import ControlPlaneService
from lai_control.store import ConversationStore


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class FakeServer:
    """Accept one connection, read one line, and answer with canned bytes."""

    def __init__(self, reply: bytes) -> None:
        self.reply = reply
        self.received = b""
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(1)
        self.port = self._listener.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        conn, _ = self._listener.accept()
        with conn, conn.makefile("rb") as stream:
            self.received = stream.readline()
            if self.reply:
                conn.sendall(self.reply)

    def close(self) -> None:
        self._thread.join(timeout=5)
        self._listener.close()


class ControlClientTransportTests(unittest.TestCase):
    """Validate transport and protocol error separation."""

    def test_connection_refused_is_transport_error(self) -> None:
        client = ControlClient("127.0.0.1", _unused_port(), timeout=2)
        with self.assertRaises(TransportError):
            client.call("last")

    def test_garbage_response_is_protocol_error(self) -> None:
        server = FakeServer(b"definitely not json\n")
        try:
            with self.assertRaises(ProtocolError):
                ControlClient("127.0.0.1", server.port, timeout=2).call("last")
        finally:
            server.close()
        self.assertEqual(server.received, b'{"type":"last"}\n')

    def test_undecodable_argv_text_is_sent_escaped(self) -> None:
        # Non-UTF-8 argv bytes reach Python as lone surrogates.
        server = FakeServer(b'{"status":"ok"}\n')
        try:
            ControlClient("127.0.0.1", server.port, timeout=2).notify("build \udcff done")
        finally:
            server.close()
        self.assertEqual(
            server.received, b'{"type":"notify","message":"build \\udcff done"}\n'
        )

    def test_closed_without_response_is_transport_error(self) -> None:
        server = FakeServer(b"")
        try:
            with self.assertRaises(TransportError):
                ControlClient("127.0.0.1", server.port, timeout=2).call("notify", "x")
        finally:
            server.close()

    def test_error_status_is_returned_by_call_and_raised_by_request(self) -> None:
        reply = b'{"status":"error","data":{"error":"No messages found"}}\n'
        server = FakeServer(reply)
        try:
            response = ControlClient("127.0.0.1", server.port, timeout=2).call("last")
        finally:
            server.close()
        self.assertEqual(response.error_message, "No messages found")

        server = FakeServer(reply)
        try:
            with self.assertRaises(ProtocolError) as ctx:
                ControlClient("127.0.0.1", server.port, timeout=2).request("last")
        finally:
            server.close()
        self.assertEqual(str(ctx.exception), "No messages found")


class AskAndPollTests(unittest.TestCase):
    """Validate the poll-once-after-delay flow against a live server."""

    def setUp(self) -> None:
        self.events = EventBus()
        self.store = ConversationStore()
        self.conversation = self.store.create_conversation("t", "m", "p")
        self.service = ControlPlaneService(
            ("127.0.0.1", 0), Dispatcher(self.events, self.store, False)
        )
        self.assertTrue(self.service.start())
        address = self.service.address
        assert address is not None
        self.client = ControlClient(*address, timeout=5)

    def tearDown(self) -> None:
        self.service.stop()
        self.store.close()

    def _answer(self, event: Event) -> None:
        self.store.create_message(
            self.conversation.id, "assistant", f"answer to {event.data['prompt']}"
        )

    def test_fresh_reply_is_reported(self) -> None:
        self.events.subscribe(ASK_EVENT, self._answer)
        result = self.client.ask_and_poll({"prompt": "q1"}, delay=0)
        assert result.message is not None
        self.assertTrue(result.fresh)
        self.assertEqual(result.message["content"], "answer to q1")

    def test_stale_reply_is_flagged(self) -> None:
        self.store.create_message(self.conversation.id, "assistant", "old answer")
        result = self.client.ask_and_poll({"prompt": "q2"}, delay=0)
        assert result.message is not None
        self.assertFalse(result.fresh)
        self.assertEqual(result.message["content"], "old answer")

    def test_no_reply_at_all(self) -> None:
        result = self.client.ask_and_poll({"prompt": "q3"}, delay=0)
        self.assertIsNone(result.message)
        self.assertFalse(result.fresh)


if __name__ == "__main__":
    unittest.main()
