"""Structured logging configuration with automatic dispatch context injection.

Every record emitted under the ``role_dispatch`` logger tree carries the
dispatch ID and role of the dispatch that produced it, so a single
generation request can be followed across retries and fallbacks.

Usage:
    from role_dispatch.core.logging_config import configure_logging, get_logger

    configure_logging(level="DEBUG", format="human")
    logger = get_logger(__name__)
"""

from __future__ import annotations

import json
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO, Union

from role_dispatch.core.context import get_dispatch_id, get_role, get_start_time

__all__ = [
    "ROOT_LOGGER",
    "ContextFilter",
    "StructuredFormatter",
    "HumanReadableFormatter",
    "configure_logging",
    "get_logger",
    "add_context_filter",
]

ROOT_LOGGER = "role_dispatch"


class ContextFilter(logging.Filter):
    """Logging filter that injects dispatch context into log records.

    Adds ``dispatch_id``, ``role`` and ``elapsed_ms`` to every record.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.dispatch_id = get_dispatch_id() or "-"
        record.role = get_role() or "-"

        start_time = get_start_time()
        if start_time > 0:
            record.elapsed_ms = round((time.time() - start_time) * 1000, 2)
        else:
            record.elapsed_ms = 0.0

        return True


class StructuredFormatter(logging.Formatter):
    """JSON-structured log formatter for machine-readable output.

    Example output:
        {"timestamp":"2024-01-15T10:30:45.123Z","level":"INFO",
         "logger":"role_dispatch.core.dispatch","message":"Retrying",
         "dispatch_id":"dsp_a1b2c3d4e5f6","role":"primary","elapsed_ms":42.5}
    """

    _STANDARD_ATTRS = frozenset(
        {
            "name",
            "msg",
            "args",
            "levelname",
            "levelno",
            "pathname",
            "filename",
            "module",
            "lineno",
            "funcName",
            "created",
            "msecs",
            "relativeCreated",
            "thread",
            "threadName",
            "processName",
            "process",
            "taskName",
            "message",
            "exc_info",
            "exc_text",
            "stack_info",
            "dispatch_id",
            "role",
            "elapsed_ms",
        }
    )

    def __init__(
        self,
        *,
        include_extra: bool = True,
        include_exception: bool = True,
        timestamp_format: str = "iso",
    ):
        """Initialize the structured formatter.

        Args:
            include_extra: Include extra record attributes
            include_exception: Include exception info in output
            timestamp_format: "iso" for ISO 8601, "unix" for Unix timestamp
        """
        super().__init__()
        self.include_extra = include_extra
        self.include_exception = include_exception
        self.timestamp_format = timestamp_format

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {}

        if self.timestamp_format == "iso":
            log_entry["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()
        else:
            log_entry["timestamp"] = record.created

        log_entry["level"] = record.levelname
        log_entry["logger"] = record.name
        log_entry["message"] = record.getMessage()
        log_entry["location"] = {
            "file": record.filename,
            "line": record.lineno,
            "function": record.funcName,
        }

        log_entry["dispatch_id"] = getattr(record, "dispatch_id", "-")
        log_entry["role"] = getattr(record, "role", "-")
        log_entry["elapsed_ms"] = getattr(record, "elapsed_ms", 0.0)

        if self.include_exception and record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            extra = {}
            for key, value in record.__dict__.items():
                if key in self._STANDARD_ATTRS:
                    continue
                try:
                    json.dumps(value)
                    extra[key] = value
                except (TypeError, ValueError):
                    extra[key] = str(value)
            if extra:
                log_entry["extra"] = extra

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter with context prefix.

    Produces logs in format:
        [LEVEL] [dispatch_id/role] logger: message
    """

    def __init__(self, *, include_timestamp: bool = True, include_location: bool = False):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_location = include_location

    def format(self, record: logging.LogRecord) -> str:
        parts = []

        if self.include_timestamp:
            ts = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
            parts.append(ts)

        parts.append(f"[{record.levelname}]")

        dispatch_id = getattr(record, "dispatch_id", "-")
        if dispatch_id and dispatch_id != "-":
            parts.append(f"[{dispatch_id}/{getattr(record, 'role', '-')}]")

        logger_name = record.name
        prefix = ROOT_LOGGER + "."
        if logger_name.startswith(prefix):
            logger_name = logger_name[len(prefix):]
        parts.append(f"{logger_name}:")

        parts.append(record.getMessage())

        if self.include_location:
            parts.append(f"({record.filename}:{record.lineno})")

        result = " ".join(parts)
        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)
        return result


def configure_logging(
    *,
    level: Union[int, str] = logging.INFO,
    format: str = "structured",
    stream: Optional[TextIO] = None,
    add_context: bool = True,
) -> logging.Logger:
    """Configure the root role_dispatch logger.

    Args:
        level: Log level (default: INFO)
        format: Output format ("structured" for JSON, "human" for readable)
        stream: Output stream (default: stderr)
        add_context: Add ContextFilter for automatic context injection

    Returns:
        Configured root logger for role_dispatch
    """
    if isinstance(level, str):
        level = level.upper()

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)

    if format == "structured":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    if add_context:
        handler.addFilter(ContextFilter())

    logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the role_dispatch namespace.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def add_context_filter(handler: logging.Handler) -> None:
    """Add ContextFilter to an existing handler."""
    handler.addFilter(ContextFilter())
