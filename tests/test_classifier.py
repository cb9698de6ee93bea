"""Tests for the failure classifier."""

from __future__ import annotations

import unittest

from lai_control.classifier import FALLBACK_SUMMARY, classify, should_classify


class ClassifierTests(unittest.TestCase):
    """Validate heuristics and their ordering."""

    def test_command_not_found_with_exit_127(self) -> None:
        self.assertEqual(
            classify("bash: foo: command not found", "", 127),
            "Process exited with code 127; Error output detected; "
            "Command or file not found - check spelling and PATH",
        )

    def test_permission_denied_is_case_insensitive(self) -> None:
        summary = classify("Permission Denied", "", 1)
        self.assertIn(
            "Permission issue - try with sudo or check file permissions", summary
        )

    def test_connection_refused_needs_both_words(self) -> None:
        self.assertIn(
            "Connection refused - check if service is running",
            classify("connect: Connection refused", "", 7),
        )
        self.assertNotIn("Connection refused", classify("connection reset", "", 7))

    def test_memory_signals(self) -> None:
        for stderr in ("fatal: Out of memory", "killed by OOM killer"):
            self.assertIn("Memory issue", classify(stderr, "", 137))

    def test_multiple_signals_keep_table_order(self) -> None:
        summary = classify("permission denied; no such file", "", None)
        self.assertEqual(
            summary.split("; "),
            [
                "Error output detected",
                "Permission issue - try with sudo or check file permissions",
                "Command or file not found - check spelling and PATH",
            ],
        )

    def test_stderr_on_success(self) -> None:
        self.assertEqual(classify("warning: deprecated", "", 0), "Error output detected")

    def test_fallback_when_nothing_detected(self) -> None:
        self.assertEqual(classify("", "output", None), FALLBACK_SUMMARY)

    def test_is_deterministic(self) -> None:
        args = ("ERROR: permission denied", "", 2)
        self.assertEqual(classify(*args), classify(*args))

    def test_should_classify(self) -> None:
        self.assertFalse(should_classify("", 0))
        self.assertTrue(should_classify("", 1))
        self.assertTrue(should_classify("", None))
        self.assertTrue(should_classify("warn", 0))


if __name__ == "__main__":
    unittest.main()
