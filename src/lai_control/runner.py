"""Timeout-bounded external command execution.

Commands are split on whitespace and executed directly, never through a
shell: quoting, globbing, pipes and redirection are not interpreted. The
child is polled on a fixed interval so the wall-clock timeout is enforced
without signals or alarms; on expiry it is killed and reaped, and whatever
output it produced so far is kept.

Each child runs in its own session. When the child exits, anything it
left running in that session is killed too, so a backgrounded process
cannot hold the output pipes open past the end of the run.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass
import logging
import os
from pathlib import Path
import signal
import subprocess
import threading
import time
from typing import IO, Any

from .audit import AuditLog, AuditRecord
from .classifier import classify, should_classify
from .exceptions import ExecutionError

LOGGER = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.05
DEFAULT_TIMEOUT_SECONDS = 30.0
# Upper bound on waiting for pipe readers after the session is killed; a
# grandchild that started its own session can still keep a pipe open.
_READER_JOIN_SECONDS = 2.0
_POSIX = os.name == "posix"


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one command; ``exit_code`` is ``None`` exactly when it timed out."""

    command: str
    working_dir: str
    exit_code: int | None
    stdout: str
    stderr: str
    execution_time_ms: int
    timed_out: bool
    error_summary: str | None = None

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def split_command(command: str) -> list[str]:
    """Whitespace split with no quoting support."""
    return command.split()


def _drain(stream: IO[bytes], sink: list[bytes]) -> None:
    try:
        for chunk in iter(lambda: stream.read1(65536), b""):
            sink.append(chunk)
    except (OSError, ValueError):
        # Pipe closed underneath us after a kill.
        pass


def _kill_process_group(proc: subprocess.Popen[bytes]) -> None:
    """SIGKILL the child and everything it spawned into its session."""
    if not _POSIX:
        proc.kill()
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        # Nothing left in the group.
        pass


def _start_reader(stream: IO[bytes] | None, sink: list[bytes]) -> threading.Thread | None:
    if stream is None:
        return None
    reader = threading.Thread(target=_drain, args=(stream, sink), daemon=True)
    reader.start()
    return reader


class ProcessRunner:
    """Spawn, poll, and collect child processes; optionally audit every run."""

    def __init__(
        self,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        audit_log: AuditLog | None = None,
    ) -> None:
        self.poll_interval = poll_interval
        self.audit_log = audit_log

    def run(
        self,
        command: str,
        cwd: str | Path | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        tag: str | None = None,
    ) -> ExecutionResult:
        """Run a whitespace-separated command line.

        Raises ExecutionError when nothing could be started (blank command,
        missing program, bad working directory). A program that starts and
        fails is reported through the result, never as an exception.
        """
        argv = split_command(command)
        if not argv:
            raise ExecutionError("Empty command")
        return self.run_argv(argv, cwd=cwd, timeout=timeout, display=command, tag=tag)

    def run_argv(
        self,
        argv: Sequence[str],
        cwd: str | Path | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        display: str | None = None,
        tag: str | None = None,
    ) -> ExecutionResult:
        if not argv:
            raise ExecutionError("Empty command")
        working_dir = str(cwd) if cwd is not None else os.getcwd()
        command = display if display is not None else " ".join(argv)

        started = time.monotonic()
        try:
            proc = subprocess.Popen(  # noqa: S603 - argv list, no shell
                list(argv),
                cwd=working_dir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=_POSIX,
            )
        except (OSError, ValueError) as exc:
            raise ExecutionError(f"Failed to spawn command: {exc}") from exc

        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []
        readers = [
            _start_reader(proc.stdout, stdout_chunks),
            _start_reader(proc.stderr, stderr_chunks),
        ]

        timed_out = False
        exit_code: int | None = None
        try:
            while True:
                returncode = proc.poll()
                if returncode is not None:
                    exit_code = returncode
                    break
                if time.monotonic() - started >= timeout:
                    _kill_process_group(proc)
                    proc.wait()
                    timed_out = True
                    LOGGER.warning(
                        "runner.timeout",
                        extra={
                            "event": "runner.timeout",
                            "command": command,
                            "timeout_seconds": timeout,
                        },
                    )
                    break
                time.sleep(self.poll_interval)
        finally:
            _kill_process_group(proc)
            proc.wait()
            for reader, stream in zip(readers, (proc.stdout, proc.stderr)):
                if reader is None or stream is None:
                    continue
                reader.join(_READER_JOIN_SECONDS)
                if reader.is_alive():
                    # Closing would block on the reader holding the buffer lock.
                    LOGGER.warning(
                        "runner.pipe_held_open",
                        extra={"event": "runner.pipe_held_open", "command": command},
                    )
                    continue
                stream.close()

        stdout = b"".join(stdout_chunks).decode("utf-8", errors="replace")
        stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")
        elapsed_ms = int((time.monotonic() - started) * 1000)

        error_summary = (
            classify(stderr, stdout, exit_code)
            if should_classify(stderr, exit_code)
            else None
        )
        result = ExecutionResult(
            command=command,
            working_dir=working_dir,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            execution_time_ms=elapsed_ms,
            timed_out=timed_out,
            error_summary=error_summary,
        )
        LOGGER.debug(
            "runner.finished",
            extra={
                "event": "runner.finished",
                "command": command,
                "exit_code": exit_code,
                "timed_out": timed_out,
                "execution_time_ms": elapsed_ms,
            },
        )
        self._audit(result, tag or argv[0], cwd)
        return result

    def _audit(self, result: ExecutionResult, tag: str, cwd: str | Path | None) -> None:
        if self.audit_log is None:
            return
        self.audit_log.append(
            AuditRecord(
                tag=tag,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                cwd=str(cwd) if cwd is not None else None,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        )
