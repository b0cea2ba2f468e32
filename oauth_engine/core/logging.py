"""Logging configuration for the OAuth engine.

WHAT WE LOG (AND WHAT WE NEVER LOG)
------------------------------------
An authorization server is a credential factory.  Every code, access
token, refresh token and client secret that passes through it is a
bearer credential: whoever holds the string holds the power.  Log
aggregation systems are read by far more people than the token store,
so a single careless ``logger.info("issued %s", token)`` turns the log
pipeline into a token store with weaker access control.

Rules followed across the code base:

  - Raw codes / tokens / secrets never reach a log call.  When a record
    needs to be correlated, log the first 12 hex chars of its SHA-256
    hash (``hash_prefix()`` below).  That is enough to grep for, and
    useless to an attacker.
  - Failures are logged server-side with the real reason
    ("code expired", "redirect_uri mismatch") even though the client
    only ever sees ``invalid_grant``.  The log is the oracle; the HTTP
    response is not.

WHY TWO FORMATTERS
--------------------
  _ContainerFormatter — human-readable, single-line, for local dev.
  _JsonFormatter — one JSON object per line for log aggregation.
    Set LOG_JSON=true in production.  Context fields attached by
    RequestContextMiddleware (request_id, client_id, grant_type, ...)
    become top-level keys you can filter on.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
from contextvars import ContextVar

# Per-request correlation id.  Set by RequestContextMiddleware, read by the
# filter below so every record emitted during a request carries it.
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


def hash_prefix(secret: str, length: int = 12) -> str:
    """Return a short, non-reversible fingerprint of a secret for logs."""
    return hashlib.sha256(secret.encode()).hexdigest()[:length]


class RequestContextFilter(logging.Filter):
    """Attach the current request id to every LogRecord.

    Installed on the handler (not the root logger): logger-level filters
    only see records logged directly on that logger, while handler-level
    filters see everything that propagates up to it.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get("-")  # type: ignore[attr-defined]
        return True


class _ContainerFormatter(logging.Formatter):
    """Single-line formatter tuned for container stdout.

    - Always: ISO-8601 timestamp, level, logger name, request id, message
    - WARNING+: appends [filename:lineno] so you can locate the guard clause
    - ERROR/CRITICAL: stack trace included when exc_info is present
    """

    _BASE_FMT = "%(asctime)s %(levelname)-8s %(name)s [%(request_id)s]  %(message)s"
    _LOC_SUFFIX = "  [%(filename)s:%(lineno)d]"

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        base = super().formatTime(record, datefmt)
        ms = int(record.msecs)
        # Insert .NNN before the timezone offset (last 5 chars: +0000)
        return f"{base[:-5]}.{ms:03d}{base[-5:]}"

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "request_id"):
            record.request_id = "-"  # type: ignore[attr-defined]
        if record.levelno >= logging.WARNING:
            self._style._fmt = self._BASE_FMT + self._LOC_SUFFIX
        else:
            self._style._fmt = self._BASE_FMT
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """JSON Lines formatter for machine-parseable log output."""

    # Fields the middleware and the endpoints may attach via ``extra=``.
    _CONTEXT_FIELDS = (
        "request_id",
        "method",
        "path",
        "status_code",
        "duration_ms",
        "client_id",
        "grant_type",
        "error",
    )

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in self._CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level_name: str, *, json_format: bool = False) -> None:
    """Configure root logger for container environments.

    Args:
        level_name: Log level string (debug/info/warning/error)
        json_format: If True, emit JSON lines. If False, human-readable.
                     Controlled by LOG_JSON env var in Settings.
    """
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if json_format else _ContainerFormatter())
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # Keep third-party loggers from flooding at DEBUG
    for name in (
        "uvicorn",
        "uvicorn.access",
        "uvicorn.error",
        "httpcore",
        "httpx",
        "sqlalchemy.engine",
        "aiosqlite",
    ):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
