"""Structured logging setup.

Library modules only ever call logging.getLogger(__name__) and attach
context through ``extra={...}``. The host process decides whether to call
setup_logging(); when it does, records are emitted as JSON lines so the
extra fields survive as first-class keys.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from typing import IO

# Attributes every LogRecord carries; anything else came from ``extra``
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

LOG_LEVEL_ENV = "PROVIDER_LOG"
DEFAULT_LOG_LEVEL = logging.WARNING


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def level_from_env(default: int = DEFAULT_LOG_LEVEL) -> int:
    """Resolve the log level from PROVIDER_LOG (names like DEBUG, INFO, TRACE)."""
    value = os.environ.get(LOG_LEVEL_ENV, "").strip().upper()
    if not value:
        return default
    if value == "TRACE":
        return logging.DEBUG
    level = logging.getLevelName(value)
    return level if isinstance(level, int) else default


def setup_logging(level: int | None = None, stream: IO[str] | None = None) -> logging.Handler:
    """Install the JSON handler on the package logger.

    Args:
        level: Explicit level; defaults to PROVIDER_LOG or WARNING.
        stream: Output stream (default: stderr).

    Returns:
        The installed handler, so callers can remove it again.
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter())

    package_logger = logging.getLogger("provider_core")
    package_logger.addHandler(handler)
    package_logger.setLevel(level if level is not None else level_from_env())

    # Reduce noise from the HTTP stack
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return handler
