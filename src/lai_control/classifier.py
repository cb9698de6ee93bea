"""Heuristic diagnosis of failed command output."""

from __future__ import annotations

from collections.abc import Callable

FALLBACK_SUMMARY = "Command completed but may have issues"
STDERR_PRESENT = "Error output detected"

# (predicate over lowercased stderr, advisory), checked in order.
_STDERR_SIGNALS: tuple[tuple[Callable[[str], bool], str], ...] = (
    (
        lambda text: "permission denied" in text,
        "Permission issue - try with sudo or check file permissions",
    ),
    (
        lambda text: "command not found" in text or "no such file" in text,
        "Command or file not found - check spelling and PATH",
    ),
    (
        lambda text: "connection" in text and "refused" in text,
        "Connection refused - check if service is running",
    ),
    (
        lambda text: "out of memory" in text or "oom" in text,
        "Memory issue - consider freeing up memory or using less "
        "memory-intensive options",
    ),
)


def should_classify(stderr: str, exit_code: int | None) -> bool:
    """A missing exit code (timeout) counts as a failure."""
    return exit_code != 0 or bool(stderr)


def classify(stderr: str, stdout: str, exit_code: int | None) -> str:
    """Summarize what probably went wrong, one clause per detected signal."""
    findings: list[str] = []

    if exit_code is not None and exit_code != 0:
        findings.append(f"Process exited with code {exit_code}")

    if stderr:
        findings.append(STDERR_PRESENT)
        lowered = stderr.lower()
        for matches, advisory in _STDERR_SIGNALS:
            if matches(lowered):
                findings.append(advisory)

    if not findings:
        return FALLBACK_SUMMARY
    return "; ".join(findings)
