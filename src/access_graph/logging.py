"""Logging configuration and helpers for the access graph.

Two output formats are supported:

* human-readable console logs, and
* structured JSON logs for production ingestion.

Call sites log dotted event names (``access_graph.reconcile.success``) and
pass identifiers through :func:`log_context` so both formats render them as
structured fields. Everything uses the standard :mod:`logging` library.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from access_graph.settings import Settings

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Attributes that are already handled by logging and should not be copied into
# the extra key=value list.
_STANDARD_ATTRS: set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
    "asctime",
    "taskName",
}

_CONFIGURED_FLAG = "_access_graph_configured"

_DATABASE_LOGGERS = ("sqlalchemy", "sqlalchemy.engine", "sqlalchemy.pool")


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


class ConsoleLogFormatter(logging.Formatter):
    """Render log records as single-line console output.

    Example line:

        2026-01-05T10:12:00.302Z INFO  access_graph.reconciler access_graph.reconcile.success
        added=1 relation=role_permissions removed=2 role_id=...
    """

    _time_format = "%Y-%m-%dT%H:%M:%S"

    def __init__(self) -> None:
        fmt = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
        super().__init__(fmt=fmt, datefmt=self._time_format)

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        dt = datetime.fromtimestamp(record.created, tz=UTC)
        pattern = datefmt or self._time_format
        base = dt.strftime(pattern)
        return f"{base}.{int(record.msecs):03d}Z"

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - std signature
        base = super().format(record)
        extras = [
            f"{key}={_format_extra_value(value)}"
            for key, value in sorted(_record_extras(record).items())
        ]
        if extras:
            return f"{base} " + " ".join(extras)
        return base


class JsonLogFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    _time_format = "%Y-%m-%dT%H:%M:%S"

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        dt = datetime.fromtimestamp(record.created, tz=UTC)
        pattern = datefmt or self._time_format
        base = dt.strftime(pattern)
        return f"{base}.{int(record.msecs):03d}Z"

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - std signature
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self._time_format),
            "level": record.levelname,
            "service": "access-graph",
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_record_extras(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_json_default, separators=(",", ":"))


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def setup_logging(settings: Settings) -> None:
    """Configure root logging for the current process.

    Installs a single StreamHandler with the configured formatter and sets
    the root level from ``settings.log_level``. SQLAlchemy loggers propagate
    into the same handler and default to WARNING.
    """
    root_logger = logging.getLogger()
    level = getattr(logging, settings.log_level)

    configured = getattr(root_logger, _CONFIGURED_FLAG, False)
    if not configured or not root_logger.handlers:
        root_logger.handlers = [logging.StreamHandler()]
        setattr(root_logger, _CONFIGURED_FLAG, True)
    else:
        root_logger.handlers = [root_logger.handlers[0]]

    handler = root_logger.handlers[0]
    handler.setFormatter(_build_formatter(settings.log_format))
    root_logger.setLevel(level)

    db_level = getattr(logging, settings.database_log_level or "WARNING")
    for name in _DATABASE_LOGGERS:
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.propagate = True
        logger.setLevel(db_level)


# ---------------------------------------------------------------------------
# Context helpers
# ---------------------------------------------------------------------------


def log_context(
    *,
    role_id: UUID | str | None = None,
    permission_id: UUID | str | None = None,
    principal_id: UUID | str | None = None,
    principal_type: Enum | str | None = None,
    actor_id: UUID | str | None = None,
    relation: Enum | str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Build a consistent ``extra`` payload for structured logs.

    Example:
        logger.info(
            "access_graph.reconcile.success",
            extra=log_context(role_id=role.id, actor_id=actor_id, added=2),
        )
    """
    ctx: dict[str, Any] = {}

    if role_id is not None:
        ctx["role_id"] = str(role_id)
    if permission_id is not None:
        ctx["permission_id"] = str(permission_id)
    if principal_id is not None:
        ctx["principal_id"] = str(principal_id)
    if principal_type is not None:
        ctx["principal_type"] = _enum_text(principal_type)
    if actor_id is not None:
        ctx["actor_id"] = str(actor_id)
    if relation is not None:
        ctx["relation"] = _enum_text(relation)

    for key, value in extra.items():
        ctx[key] = value

    return ctx


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _enum_text(value: Enum | str) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _format_extra_value(value: Any) -> str:
    """Format an ``extra`` value for console output."""
    if isinstance(value, (int, float, bool)):
        return str(value)
    if value is None:
        return "null"
    return str(value)


def _record_extras(record: logging.LogRecord) -> dict[str, Any]:
    extras: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _STANDARD_ATTRS or key.startswith("_"):
            continue
        extras[key] = value
    return extras


def _json_default(value: Any) -> str:
    return str(value)


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonLogFormatter()
    return ConsoleLogFormatter()


__all__ = [
    "ConsoleLogFormatter",
    "JsonLogFormatter",
    "log_context",
    "setup_logging",
]
