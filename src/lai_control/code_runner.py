"""Run short code snippets through a language interpreter.

The snippet is written to a temporary file and executed by the interpreter
for its language, under the same timeout and audit rules as any other
command run by the process runner.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import tempfile

from .exceptions import UnsupportedLanguageError
from .runner import ExecutionResult, ProcessRunner

LOGGER = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("bash", "sh", "zsh", "python", "node", "javascript")
DEFAULT_CODE_TIMEOUT_MS = 10_000

# language -> (file suffix, interpreter)
_INTERPRETERS: dict[str, tuple[str, str]] = {
    "python": (".py", "python3"),
    "node": (".js", "node"),
    "javascript": (".js", "node"),
    "bash": (".sh", "sh"),
    "sh": (".sh", "sh"),
    "zsh": (".sh", "sh"),
}


def normalize_language(language: str) -> str:
    normalized = language.strip().lower()
    if normalized not in SUPPORTED_LANGUAGES:
        raise UnsupportedLanguageError(f"Unsupported language: {language}")
    return normalized


def run_code(
    language: str,
    code: str,
    runner: ProcessRunner,
    timeout_ms: int = DEFAULT_CODE_TIMEOUT_MS,
    cwd: str | Path | None = None,
) -> ExecutionResult:
    """Execute ``code`` with the interpreter for ``language``.

    Raises UnsupportedLanguageError before anything touches the disk, and
    ExecutionError when the interpreter cannot be started.
    """
    normalized = normalize_language(language)
    suffix, interpreter = _INTERPRETERS[normalized]

    handle, script_path = tempfile.mkstemp(prefix="lai-run-", suffix=suffix)
    try:
        with os.fdopen(handle, "w", encoding="utf-8") as script:
            script.write(code)
        return runner.run_argv(
            [interpreter, script_path],
            cwd=cwd,
            timeout=timeout_ms / 1000,
            display=f"{interpreter} {script_path}",
            tag=normalized,
        )
    finally:
        try:
            os.unlink(script_path)
        except OSError as exc:
            LOGGER.warning(
                "code_runner.cleanup_failed",
                extra={
                    "event": "code_runner.cleanup_failed",
                    "path": script_path,
                    "error": str(exc),
                },
            )
