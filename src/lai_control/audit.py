"""Append-only, size-rotated audit log of every process execution.

The log is plain text meant for humans and ``tail``. Each record is a
metadata line, the truncated stdout and stderr, and a ``---`` separator.
Once the file grows past ``max_bytes`` the next append moves it to
``<name>.1`` (replacing any older backup) and starts a fresh file.

Rotation and append form one critical section. Threads in this process are
serialized by a lock; separate processes (the CLI ``capture`` command and the
desktop app) are serialized by ``flock`` on a sidecar ``.lock`` file.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import threading
import time

from .exceptions import AuditLogError

LOGGER = logging.getLogger(__name__)

DEFAULT_AUDIT_PATH = Path("executions.log")
MAX_LOG_BYTES = 1_048_576
OUTPUT_TRUNCATE_CHARS = 1000
DEFAULT_TAIL_LINES = 200


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return f"{text[:limit]}..."
    return text


@dataclass(frozen=True)
class AuditRecord:
    """One execution as written to the audit log."""

    tag: str
    exit_code: int | None
    timed_out: bool
    cwd: str | None
    stdout: str
    stderr: str
    timestamp: int = field(default_factory=lambda: int(time.time()))

    def format(self, limit: int = OUTPUT_TRUNCATE_CHARS) -> str:
        return (
            f"{self.timestamp} | lang={self.tag} | exit={self.exit_code} | "
            f"timed_out={str(self.timed_out).lower()} | cwd={self.cwd!r}\n"
            f"STDOUT: {_truncate(self.stdout, limit)}\n"
            f"STDERR: {_truncate(self.stderr, limit)}\n"
            "---\n"
        )


class AuditLog:
    """Owner of the audit file; share one instance per process."""

    def __init__(
        self,
        path: str | Path = DEFAULT_AUDIT_PATH,
        max_bytes: int = MAX_LOG_BYTES,
        truncate_chars: int = OUTPUT_TRUNCATE_CHARS,
    ) -> None:
        self.path = Path(path).expanduser()
        self.max_bytes = max_bytes
        self.truncate_chars = truncate_chars
        self._lock = threading.Lock()

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + ".1")

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with self._lock:
            if os.name != "posix":
                yield
                return

            import fcntl

            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.lock_path.open("a+b") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _rotate_locked(self) -> None:
        # replace() overwrites the old backup in one step and leaves it alone
        # when there is no current file to move.
        self.path.replace(self.backup_path)

    def append(self, record: AuditRecord) -> None:
        """Write one record, rotating first if the file is over the limit.

        Never raises: audit failures are reported on the diagnostic log only.
        """
        entry = record.format(self.truncate_chars)
        try:
            with self._exclusive():
                try:
                    size = self.path.stat().st_size
                except FileNotFoundError:
                    size = 0
                if size > self.max_bytes:
                    try:
                        self._rotate_locked()
                    except OSError as exc:
                        LOGGER.error(
                            "audit.rotate_failed",
                            extra={
                                "event": "audit.rotate_failed",
                                "path": str(self.path),
                                "error": str(exc),
                            },
                        )
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(entry)
        except OSError as exc:
            LOGGER.error(
                "audit.write_failed",
                extra={
                    "event": "audit.write_failed",
                    "path": str(self.path),
                    "error": str(exc),
                },
            )

    def rotate(self) -> bool:
        """Move the current log to the backup slot regardless of its size."""
        try:
            with self._exclusive():
                self._rotate_locked()
        except OSError as exc:
            LOGGER.error(
                "audit.rotate_failed",
                extra={
                    "event": "audit.rotate_failed",
                    "path": str(self.path),
                    "error": str(exc),
                },
            )
            return False
        LOGGER.info("audit.rotated", extra={"event": "audit.rotated", "path": str(self.path)})
        return True

    def tail(self, lines: int = DEFAULT_TAIL_LINES) -> str:
        """Return the last ``lines`` lines of the current file (not the backup)."""
        if lines <= 0:
            return ""
        try:
            with self.path.open("r", encoding="utf-8", errors="replace") as handle:
                kept = deque((line.rstrip("\n") for line in handle), maxlen=lines)
        except FileNotFoundError:
            return ""
        except OSError as exc:
            raise AuditLogError(f"failed to read audit log: {exc}") from exc
        return "\n".join(kept)
