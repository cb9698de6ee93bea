"""Domain exception hierarchy for the local control plane."""

from __future__ import annotations


class LaiControlError(RuntimeError):
    """Base class for all control-plane errors."""


class ConfigValidationError(LaiControlError):
    """Raised when configuration cannot be validated safely."""


class TransportError(LaiControlError):
    """Raised when the loopback connection cannot be opened, read, or written."""


class ProtocolError(LaiControlError):
    """Raised when the peer answers with ``status: "error"`` or garbage."""


class FramingError(LaiControlError):
    """Raised for a single bad message line; the connection stays usable."""

    wire_message = "Invalid JSON"


class MessageTooLargeError(FramingError):
    """Raised when one message line exceeds the configured size cap."""

    wire_message = "Message too large"


class InvalidJsonError(FramingError):
    """Raised when a message line is not a well-formed envelope."""

    wire_message = "Invalid JSON"


class ExecutionError(LaiControlError):
    """Raised when a process cannot be started at all."""


class UnsupportedLanguageError(ExecutionError):
    """Raised when the code runner is asked for a language it does not know."""


class AuditLogError(LaiControlError):
    """Raised when the audit log cannot be read."""


class StoreError(LaiControlError):
    """Raised when the conversation store rejects an operation."""
