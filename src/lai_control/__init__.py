"""Top-level package for lai-control."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .application import LaiApplication
    from .audit import AuditLog, AuditRecord
    from .client import ControlClient, PollResult
    from .config import ensure_config_dir, load_config
    from .dispatcher import Dispatcher
    from .exceptions import (
        ConfigValidationError,
        ExecutionError,
        LaiControlError,
        ProtocolError,
        TransportError,
    )
    from .runner import ExecutionResult, ProcessRunner
    from .server import ControlPlaneService

__all__ = [
    "AuditLog",
    "AuditRecord",
    "ConfigValidationError",
    "ControlClient",
    "ControlPlaneService",
    "Dispatcher",
    "ExecutionError",
    "ExecutionResult",
    "LaiApplication",
    "LaiControlError",
    "PollResult",
    "ProcessRunner",
    "ProtocolError",
    "TransportError",
    "ensure_config_dir",
    "load_config",
]

_LAZY_EXPORTS: dict[str, str] = {
    "AuditLog": ".audit",
    "AuditRecord": ".audit",
    "ConfigValidationError": ".exceptions",
    "ControlClient": ".client",
    "ControlPlaneService": ".server",
    "Dispatcher": ".dispatcher",
    "ExecutionError": ".exceptions",
    "ExecutionResult": ".runner",
    "LaiApplication": ".application",
    "LaiControlError": ".exceptions",
    "PollResult": ".client",
    "ProcessRunner": ".runner",
    "ProtocolError": ".exceptions",
    "TransportError": ".exceptions",
    "ensure_config_dir": ".config",
    "load_config": ".config",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import lai_control`` stays cheap for the CLI."""
    module_name = _LAZY_EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    return getattr(import_module(module_name, __name__), name)
