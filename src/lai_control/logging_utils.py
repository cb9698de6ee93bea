"""Diagnostic logging setup.

Records from ``lai_control`` go to stderr (WARNING and above) and, when
enabled, to a private log file at the configured level. Structured mode
renders each record as one JSON object via structlog, with the ``extra=``
fields of the record promoted to top-level keys.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import structlog

APP_LOGGER_PREFIX = "lai_control"
PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_TIMESTAMP = structlog.processors.TimeStamper(fmt="iso", utc=True)


class _AppRecordFilter(logging.Filter):
    """Pass only records emitted under the application's logger tree."""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.name.startswith(APP_LOGGER_PREFIX)


def _json_formatter() -> logging.Formatter:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _TIMESTAMP,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    renderer = structlog.processors.JSONRenderer(ensure_ascii=False, separators=(",", ":"))
    return structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ExtraAdder(),
            _TIMESTAMP,
        ],
    )


def _open_log_file(path: Path) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    if os.name == "posix":
        try:
            path.chmod(0o600)
        except OSError as exc:
            logging.getLogger(__name__).warning("Cannot restrict %s: %s", path, exc)
    return handler


def configure_logging(logging_config: dict[str, Any]) -> None:
    """Install handlers on the root logger from the ``[logging]`` section."""
    level = getattr(logging, str(logging_config.get("level", "INFO")).upper(), logging.INFO)
    if logging_config.get("structured", True):
        formatter = _json_formatter()
    else:
        formatter = logging.Formatter(PLAIN_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    # stdout belongs to CLI output, so diagnostics never go there.
    console = logging.StreamHandler()
    console.setLevel(max(level, logging.WARNING))
    console.addFilter(_AppRecordFilter())
    console.setFormatter(formatter)
    root.addHandler(console)

    if logging_config.get("log_to_file", False):
        target = Path(
            str(logging_config.get("log_file_path", "~/.local/state/lai/control.log"))
        ).expanduser()
        file_handler = _open_log_file(target)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
