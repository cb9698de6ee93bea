"""Composition root wiring the control plane to its collaborators."""

from __future__ import annotations

from collections.abc import Mapping
import logging
import os
from types import TracebackType
from typing import Any

from .audit import AuditLog
from .config import DEFAULT_CONFIG
from .dispatcher import Dispatcher, dev_mode_from_env
from .events import EventBus
from .runner import ProcessRunner
from .server import ControlPlaneService
from .store import ConversationStore

LOGGER = logging.getLogger(__name__)


class LaiApplication:
    """Own every long-lived object of a running assistant process.

    Nothing here is a module-level singleton; tests build as many
    independent applications as they need.
    """

    def __init__(
        self,
        config: dict[str, dict[str, Any]] | None = None,
        environ: Mapping[str, str] | None = None,
        dev_mode: bool | None = None,
    ) -> None:
        self.config = config or DEFAULT_CONFIG
        ipc = self.config["ipc"]
        runner_cfg = self.config["runner"]
        audit_cfg = self.config["audit"]

        self.dev_mode_enabled = (
            dev_mode_from_env(os.environ if environ is None else environ)
            if dev_mode is None
            else dev_mode
        )
        self.events = EventBus()
        self.store = ConversationStore(self.config["store"]["path"])
        self.audit_log = AuditLog(
            audit_cfg["path"],
            max_bytes=int(audit_cfg["max_bytes"]),
            truncate_chars=int(audit_cfg["truncate_chars"]),
        )
        self.runner = ProcessRunner(
            poll_interval=int(runner_cfg["poll_interval_ms"]) / 1000,
            audit_log=self.audit_log,
        )
        self.dispatcher = Dispatcher(self.events, self.store, self.dev_mode_enabled)
        self.control_plane = ControlPlaneService(
            (str(ipc["host"]), int(ipc["port"])),
            self.dispatcher,
            connection_timeout=float(ipc["timeout_seconds"]),
            max_message_bytes=int(ipc["max_message_bytes"]),
        )
        self.cli_available = False

    def start(self) -> bool:
        """Start the control plane; the app stays usable when binding fails."""
        self.cli_available = self.control_plane.start()
        if not self.cli_available:
            LOGGER.warning(
                "app.cli_unavailable",
                extra={"event": "app.cli_unavailable"},
            )
        return self.cli_available

    def stop(self) -> None:
        self.control_plane.stop()
        self.cli_available = False
        self.store.close()

    def __enter__(self) -> LaiApplication:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()
