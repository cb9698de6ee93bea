"""Loopback TCP listener for the control channel.

One thread per connection, each running a strict read-dispatch-write loop
so responses on a connection always come back in request order. A bad line
is answered with an error and the loop carries on; EOF, a socket timeout or
any socket error simply ends the connection.
"""

from __future__ import annotations

import logging
import socketserver
import threading
import time
from typing import Any

from .dispatcher import Dispatcher
from .events import EventBus
from .exceptions import FramingError
from .framing import (
    CONNECTION_TIMEOUT_SECONDS,
    MAX_MESSAGE_BYTES,
    Response,
    read_envelope,
    write_response,
)
from .store import ConversationStore

LOGGER = logging.getLogger(__name__)


class ControlRequestHandler(socketserver.StreamRequestHandler):
    """Serve one client connection until it closes or goes idle."""

    timeout = CONNECTION_TIMEOUT_SECONDS
    disable_nagle_algorithm = True

    server: ControlPlaneServer

    def setup(self) -> None:
        self.timeout = self.server.connection_timeout
        super().setup()
        self.messages = 0
        self.started = time.monotonic()

    def handle(self) -> None:
        try:
            while True:
                try:
                    envelope = read_envelope(self.rfile, self.server.max_message_bytes)
                except FramingError as exc:
                    self.messages += 1
                    write_response(self.wfile, Response.error(exc.wire_message))
                    continue
                if envelope is None:
                    break
                self.messages += 1
                write_response(self.wfile, self.server.dispatcher.dispatch(envelope))
        except OSError as exc:
            LOGGER.debug(
                "ipc.connection.ended",
                extra={
                    "event": "ipc.connection.ended",
                    "peer": self._peer(),
                    "reason": str(exc) or type(exc).__name__,
                },
            )

    def finish(self) -> None:
        try:
            super().finish()
        except OSError:
            # Peer already gone; nothing left to flush.
            pass
        LOGGER.debug(
            "ipc.connection.closed",
            extra={
                "event": "ipc.connection.closed",
                "peer": self._peer(),
                "messages": self.messages,
                "duration_ms": int((time.monotonic() - self.started) * 1000),
            },
        )

    def _peer(self) -> str:
        host, port = self.client_address[:2]
        return f"{host}:{port}"


class ControlPlaneServer(socketserver.ThreadingTCPServer):
    """Thread-per-connection server bound to a loopback address."""

    allow_reuse_address = True
    daemon_threads = True
    block_on_close = False

    def __init__(
        self,
        server_address: tuple[str, int],
        dispatcher: Dispatcher,
        connection_timeout: float = CONNECTION_TIMEOUT_SECONDS,
        max_message_bytes: int = MAX_MESSAGE_BYTES,
    ) -> None:
        self.dispatcher = dispatcher
        self.connection_timeout = connection_timeout
        self.max_message_bytes = max_message_bytes
        super().__init__(server_address, ControlRequestHandler)

    def process_request(self, request: Any, client_address: Any) -> None:
        try:
            super().process_request(request, client_address)
        except RuntimeError as exc:
            LOGGER.error(
                "ipc.thread_spawn_failed",
                extra={
                    "event": "ipc.thread_spawn_failed",
                    "peer": f"{client_address[0]}:{client_address[1]}",
                    "error": str(exc),
                },
            )
            self.shutdown_request(request)


def bind_server(
    listen_addr: tuple[str, int],
    dispatcher: Dispatcher,
    connection_timeout: float = CONNECTION_TIMEOUT_SECONDS,
    max_message_bytes: int = MAX_MESSAGE_BYTES,
) -> ControlPlaneServer | None:
    """Create a bound server, or log ``ipc.bind_failed`` and return None."""
    try:
        server = ControlPlaneServer(
            listen_addr,
            dispatcher,
            connection_timeout=connection_timeout,
            max_message_bytes=max_message_bytes,
        )
    except OSError as exc:
        LOGGER.error(
            "ipc.bind_failed",
            extra={
                "event": "ipc.bind_failed",
                "address": f"{listen_addr[0]}:{listen_addr[1]}",
                "error": str(exc),
            },
        )
        return None
    host, port = server.server_address[:2]
    LOGGER.info(
        "ipc.listening",
        extra={
            "event": "ipc.listening",
            "address": f"{host}:{port}",
            "dev_mode": dispatcher.dev_mode_enabled,
        },
    )
    return server


def serve(
    listen_addr: tuple[str, int],
    dev_mode_enabled: bool,
    store: ConversationStore,
    events: EventBus,
) -> None:
    """Bind and serve until the process exits.

    A bind failure is logged and the function returns, so the host
    application keeps running without command-line integration.
    """
    server = bind_server(listen_addr, Dispatcher(events, store, dev_mode_enabled))
    if server is None:
        return None
    with server:
        server.serve_forever()
    return None


class ControlPlaneService:
    """Start/stop wrapper that runs the server on a background thread."""

    def __init__(
        self,
        listen_addr: tuple[str, int],
        dispatcher: Dispatcher,
        connection_timeout: float = CONNECTION_TIMEOUT_SECONDS,
        max_message_bytes: int = MAX_MESSAGE_BYTES,
    ) -> None:
        self.listen_addr = listen_addr
        self.dispatcher = dispatcher
        self.connection_timeout = connection_timeout
        self.max_message_bytes = max_message_bytes
        self._server: ControlPlaneServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def address(self) -> tuple[str, int] | None:
        if self._server is None:
            return None
        host, port = self._server.server_address[:2]
        return str(host), int(port)

    def start(self) -> bool:
        """Bind and begin serving; return False (and log) when binding fails."""
        if self._server is not None:
            return True
        server = bind_server(
            self.listen_addr,
            self.dispatcher,
            connection_timeout=self.connection_timeout,
            max_message_bytes=self.max_message_bytes,
        )
        if server is None:
            return False
        self._server = server
        self._thread = threading.Thread(
            target=server.serve_forever, name="ipc-server", daemon=True
        )
        self._thread.start()
        return True

    def stop(self) -> None:
        server, thread = self._server, self._thread
        self._server = None
        self._thread = None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=5)
        LOGGER.info("ipc.stopped", extra={"event": "ipc.stopped"})
