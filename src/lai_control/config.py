"""Configuration loading and validation for the control plane and CLI.

Settings live in ``~/.config/lai/config.toml``. Whatever the file provides is
layered over the built-in defaults and the result is validated as a whole;
a file that fails validation is ignored in favor of the defaults rather than
half-applied.
"""

from __future__ import annotations

from copy import deepcopy
import ipaddress
import logging
import os
from pathlib import Path
import tomllib
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigValidationError

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "lai"
CONFIG_PATH = CONFIG_DIR / "config.toml"

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
LOOPBACK_NAMES = {"localhost"}


def _path_setting(value: Any, setting: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{setting} must be a non-empty string.")
    return value.strip()


class IpcConfig(BaseModel):
    """Loopback listener and framing limits."""

    host: str = "127.0.0.1"
    port: int = Field(default=39871, ge=0, le=65535)
    timeout_seconds: int = Field(default=30, ge=1, le=300)
    client_timeout_seconds: int = Field(default=10, ge=1, le=300)
    max_message_bytes: int = Field(default=1024 * 1024, ge=1024, le=64 * 1024 * 1024)

    @field_validator("host", mode="before")
    @classmethod
    def _loopback_only(cls, value: Any) -> str:
        host = str(value).strip().lower()
        if host in LOOPBACK_NAMES:
            return host
        try:
            is_loopback = ipaddress.ip_address(host).is_loopback
        except ValueError as exc:
            raise ValueError(f"ipc.host {value!r} is not an IP address.") from exc
        if not is_loopback:
            raise ValueError("ipc.host must be a loopback address.")
        return host


class RunnerConfig(BaseModel):
    """Process runner timing."""

    poll_interval_ms: int = Field(default=50, ge=10, le=1000)
    default_timeout_seconds: int = Field(default=30, ge=1, le=86_400)
    code_timeout_ms: int = Field(default=10_000, ge=100, le=3_600_000)


class AuditConfig(BaseModel):
    """Execution audit log location and limits."""

    path: str = "executions.log"
    max_bytes: int = Field(default=1_048_576, ge=1024, le=1024 * 1024 * 1024)
    truncate_chars: int = Field(default=1000, ge=16, le=1_000_000)

    @field_validator("path", mode="before")
    @classmethod
    def _audit_path(cls, value: Any) -> str:
        return _path_setting(value, "audit.path")


class ClientConfig(BaseModel):
    poll_delay_ms: int = Field(default=1400, ge=0, le=600_000)


class StoreConfig(BaseModel):
    path: str = "~/.local/state/lai/lai.db"

    @field_validator("path", mode="before")
    @classmethod
    def _store_path(cls, value: Any) -> str:
        return _path_setting(value, "store.path")


class LoggingConfig(BaseModel):
    """Diagnostic log level, format and optional file sink."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/lai/control.log"

    @field_validator("level", mode="before")
    @classmethod
    def _known_level(cls, value: Any) -> str:
        level = str(value).strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"logging.level must be one of {', '.join(LOG_LEVELS)}.")
        return level

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _log_file_path(cls, value: Any) -> str:
        return _path_setting(value, "logging.log_file_path")


class Config(BaseModel):
    """Every configuration section, each with working defaults."""

    ipc: IpcConfig = IpcConfig()
    runner: RunnerConfig = RunnerConfig()
    audit: AuditConfig = AuditConfig()
    client: ClientConfig = ClientConfig()
    store: StoreConfig = StoreConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Create the config directory if needed; failures are only logged."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Cannot create %s: %s", directory, exc)
    return directory


def _layer(defaults: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Return ``defaults`` with ``overrides`` applied, recursing into tables."""
    result = deepcopy(defaults)
    for key, value in overrides.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = _layer(current, value)
        else:
            result[key] = value
    return result


def _restrict_permissions(path: Path) -> None:
    # The file may hold paths to private state; keep it owner-only on POSIX.
    if os.name != "posix":
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Cannot restrict permissions on %s: %s", path, exc)


def _read_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    _restrict_permissions(path)
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        LOGGER.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """Load, layer and validate the configuration.

    ``config_path`` overrides the default location; tests and ``--config``
    use it.
    """
    overrides = _read_toml(config_path or CONFIG_PATH)
    try:
        return Config.model_validate(_layer(DEFAULT_CONFIG, overrides)).model_dump()
    except ValidationError as exc:
        LOGGER.warning("Invalid configuration, falling back to defaults: %s", exc)
        return deepcopy(DEFAULT_CONFIG)
    except (TypeError, ValueError) as exc:
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc
