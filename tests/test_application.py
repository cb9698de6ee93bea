"""Tests for the composition root."""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
import socket
import tempfile
import unittest

from lai_control.application import LaiApplication
from lai_control.client import ControlClient
from lai_control.config import DEFAULT_CONFIG
from lai_control.events import NOTIFY_EVENT, Event


def _config(temp_dir: str, port: int = 0) -> dict:
    config = deepcopy(DEFAULT_CONFIG)
    config["ipc"]["port"] = port
    config["store"]["path"] = str(Path(temp_dir) / "lai.db")
    config["audit"]["path"] = str(Path(temp_dir) / "executions.log")
    return config


class LaiApplicationTests(unittest.TestCase):
    """Validate wiring and lifecycle."""

    def test_notify_reaches_application_events(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            with LaiApplication(_config(temp_dir), environ={}) as app:
                self.assertTrue(app.cli_available)
                received: list[Event] = []
                app.events.subscribe(NOTIFY_EVENT, received.append)
                address = app.control_plane.address
                assert address is not None
                ControlClient(*address, timeout=5).notify("hello")
                self.assertEqual(received[0].data, {"message": "hello"})
            self.assertFalse(app.cli_available)

    def test_dev_mode_comes_from_environment(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            app = LaiApplication(_config(temp_dir), environ={"DEV_MODE": "yes"})
            self.assertTrue(app.dispatcher.dev_mode_enabled)
            app.stop()

            app = LaiApplication(_config(temp_dir), environ={})
            self.assertFalse(app.dispatcher.dev_mode_enabled)
            app.stop()

    def test_explicit_dev_mode_wins(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            app = LaiApplication(
                _config(temp_dir), environ={"DEV_MODE": "1"}, dev_mode=False
            )
            self.assertFalse(app.dispatcher.dev_mode_enabled)
            app.stop()

    def test_bind_failure_leaves_app_running_without_cli(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
                blocker.bind(("127.0.0.1", 0))
                blocker.listen(1)
                port = blocker.getsockname()[1]
                app = LaiApplication(_config(temp_dir, port=port), environ={})
                with self.assertLogs("lai_control", level="WARNING"):
                    self.assertFalse(app.start())
                self.assertFalse(app.cli_available)
                result = app.runner.run("echo still-works")
                self.assertEqual(result.stdout, "still-works\n")
                app.stop()

    def test_runner_is_audited_to_configured_path(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            app = LaiApplication(_config(temp_dir), environ={})
            app.runner.run("echo logged")
            app.stop()
            self.assertIn(
                "STDOUT: logged",
                (Path(temp_dir) / "executions.log").read_text(encoding="utf-8"),
            )


if __name__ == "__main__":
    unittest.main()
