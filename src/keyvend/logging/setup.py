"""Handlers and formatters for the ``keyvend`` logger tree.

Two outputs are configured by :func:`configure_logging`: the console
(JSON lines or text, per ``logging.format``) and, when enabled, a
rotating JSON file that receives only ``keyvend.audit`` records.

Log lines can carry access URLs (``ss://`` links are bearer
credentials) and management or chat API URLs (secret path prefix, bot
token).  Both formatters pass their output through
:mod:`keyvend.logging.sanitize`.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING

from keyvend.logging.sanitize import sanitize_for_logs, sanitize_url

if TYPE_CHECKING:
    from keyvend.config.settings import AuditLogSettings, LoggingSettings

# Per-request attributes, with the value used outside a request
_CONTEXT_DEFAULTS: dict[str, object] = {
    "request_id": "-",
    "client_ip": "-",
    "owner_id": None,
    "method": None,
    "path": None,
}

# Anything on a record that is not here came in through ``extra=``
_RESERVED = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__,
) | {"message", "asctime", "taskName"} | set(_CONTEXT_DEFAULTS)

_QUIET_LOGGERS = ("werkzeug", "gunicorn.access", "gunicorn.error", "psycopg.pool")


def _scrub(text: str) -> str:
    return sanitize_url(text) if "://" in text else text


class StructuredFormatter(logging.Formatter):
    """One JSON object per record; ``extra=`` fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": _scrub(record.getMessage()),
        }
        data.update(
            (attr, getattr(record, attr))
            for attr in _CONTEXT_DEFAULTS
            if getattr(record, attr, None) is not None
        )
        extras = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED and not key.startswith("_")
        }
        for key, value in sanitize_for_logs(extras).items():
            data.setdefault(key, value)

        if record.exc_info and record.exc_info[0] is not None:
            data["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            data["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(data, default=str)


class TextFormatter(logging.Formatter):
    """Single-line console format for local runs."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s [%(request_id)s] %(client_ip)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        return _scrub(super().format(record))


class RequestContextFilter(logging.Filter):
    """Copy the current webhook request's details onto each record.

    ``owner_id`` is the chat user the update came from; the webhook
    stores it in ``g.owner_id`` after the update has been parsed.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        for attr, default in _CONTEXT_DEFAULTS.items():
            if not hasattr(record, attr):
                setattr(record, attr, default)

        from flask import g, has_request_context, request  # noqa: PLC0415

        if not has_request_context():
            return True

        record.request_id = g.get("request_id", record.request_id)  # type: ignore[attr-defined]
        record.client_ip = request.remote_addr or record.client_ip  # type: ignore[attr-defined]
        record.method = request.method  # type: ignore[attr-defined]
        record.path = request.path  # type: ignore[attr-defined]
        if g.get("owner_id") is not None:
            record.owner_id = g.owner_id  # type: ignore[attr-defined]
        return True


def _audit_handler(
    audit: AuditLogSettings,
    context: logging.Filter,
    console: logging.Logger,
) -> logging.Handler | None:
    try:
        handler = RotatingFileHandler(
            audit.file,
            maxBytes=audit.max_file_size_bytes,
            backupCount=audit.backup_count,
        )
    except OSError as exc:
        console.warning("Audit log %s not writable, using the console: %s", audit.file, exc)
        return None
    handler.setFormatter(StructuredFormatter())
    handler.addFilter(context)
    return handler


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """(Re)build handlers for ``keyvend`` and ``keyvend.audit``.

    Safe to call more than once; previous handlers are dropped.
    Returns the ``keyvend`` logger.
    """
    context = RequestContextFilter()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(StructuredFormatter() if settings.format == "json" else TextFormatter())
    console.addFilter(context)

    root = logging.getLogger("keyvend")
    root.handlers.clear()
    root.setLevel(getattr(logging, settings.level.upper(), logging.INFO))
    root.propagate = False
    root.addHandler(console)

    audit = logging.getLogger("keyvend.audit")
    audit.handlers.clear()
    if not settings.audit.enabled:
        audit.setLevel(logging.CRITICAL + 1)
    else:
        audit.setLevel(logging.INFO)
        if settings.audit.file:
            handler = _audit_handler(settings.audit, context, root)
            if handler is not None:
                audit.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root
