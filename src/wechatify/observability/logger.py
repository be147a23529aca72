"""Structured JSON logger for wechatify.

Every log record is emitted as a single-line JSON object so it can be
consumed by log aggregation pipelines without additional parsing.
Structured fields are passed through :func:`wechatify.utils.redact.redact`
first, so access tokens embedded in URLs and credential-named keys never
reach the output.

Typical structured output::

    {"ts": "2025-07-01T12:00:00.123456+00:00", "level": "INFO",
     "logger": "wechatify.processor", "thread": "MainThread",
     "message": "image uploaded", "op": "process", "media_id": "abc123"}

Usage::

    from wechatify.observability import get_logger

    log = get_logger()
    log.info("image uploaded", extra={"extra_fields": {"media_id": "abc"}})

    # Or create a child logger for a sub-module
    log = get_logger("wechatify.compress")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from wechatify.utils.redact import redact


class StructuredFormatter(logging.Formatter):
    """Format log records as single-line JSON objects.

    Guaranteed keys:

    * ``ts`` -- ISO-8601 UTC timestamp
    * ``level`` -- Python log level name (``DEBUG``, ``INFO``, ...)
    * ``logger`` -- Logger name
    * ``thread`` -- Name of the emitting thread (runs may be concurrent)
    * ``message`` -- Formatted log message

    Extra structured fields go in ``extra={"extra_fields": {...}}`` and are
    merged (redacted) into the top-level object.  ``exc_info`` and
    ``stack_info`` are serialised when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        extra_fields: dict[str, Any] | None = getattr(
            record, "extra_fields", None
        )
        if extra_fields is not None:
            log_entry.update(redact(extra_fields))

        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            log_entry["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


# One handler per logger name so that ``get_logger`` is idempotent even when
# called from multiple threads/modules.
_configured_loggers: set[str] = set()


def get_logger(
    name: str = "wechatify",
    *,
    level: int | str = logging.DEBUG,
    stream: Any | None = None,
) -> logging.Logger:
    """Get or create a structured JSON logger.

    Parameters
    ----------
    name:
        Logger name.  Defaults to ``"wechatify"``.
    level:
        Minimum log level, as an ``int`` or a case-insensitive string.
        Defaults to ``DEBUG``; callers narrow it after retrieval.
    stream:
        Output stream for the handler.  Defaults to ``sys.stderr``.

    Returns
    -------
    logging.Logger
        A logger with a :class:`StructuredFormatter` handler attached.
        Repeated calls with the same *name* return the same logger and do
        **not** add duplicate handlers.
    """
    logger = logging.getLogger(name)

    if name not in _configured_loggers:
        resolved_level = (
            logging.getLevelName(level.upper())
            if isinstance(level, str)
            else level
        )
        logger.setLevel(resolved_level)

        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)

        logger.propagate = False

        _configured_loggers.add(name)

    return logger
