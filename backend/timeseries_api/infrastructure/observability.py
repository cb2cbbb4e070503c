"""Structured Logging: JSON formatter, request-span context and one-time setup.

Invariants:
    - All logs include timestamp, level, logger name, and message
    - Request-span fields (request_id, method, uri, matched_path) are attached to
      every record emitted while a request is in flight
    - setup_logging() configures the root logger once per process; later calls are no-ops
    - No teardown: each record is flushed by the handler as it is emitted

Design Decisions:
    - JSONFormatter over third-party libs: zero dependencies, full control
    - Span context in a ContextVar: asyncio copies it into every task a request
      spawns, so handler logs carry the span without passing it around
"""

import json
import logging
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any

_SPAN_FIELDS = ("request_id", "method", "uri", "matched_path")
_EXTRA_FIELDS = (
    "status_code", "duration_ms", "error_code", "error", "route", "db_url",
    "address",
)

_request_span: ContextVar[dict[str, Any] | None] = ContextVar(
    "request_span", default=None,
)

_configured = False


def open_span(**fields: Any) -> Token:
    """Start the request span for the current task."""
    return _request_span.set(dict(fields))


def update_span(**fields: Any) -> None:
    span = _request_span.get()
    if span is not None:
        span.update(fields)


def current_span() -> dict[str, Any]:
    return dict(_request_span.get() or {})


def close_span(token: Token) -> None:
    _request_span.reset(token)


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, val in current_span().items():
            if val is not None:
                log[key] = val
        for key in _EXTRA_FIELDS:
            val = record.__dict__.get(key)
            if val is not None:
                log[key] = val
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable format for local development, with the request id when present."""

    def __init__(self):
        super().__init__(
            "%(asctime)s %(levelname)s %(name)s %(span)s%(message)s",
        )

    def format(self, record: logging.LogRecord) -> str:
        request_id = current_span().get("request_id")
        record.span = f"[{request_id}] " if request_id else ""
        return super().format(record)


def setup_logging(level: str = "INFO", fmt: str = "json") -> bool:
    """Configure logging for the process. Returns False if already configured."""
    global _configured
    if _configured:
        return False
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # uvicorn's access log duplicates the request span record
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    _configured = True
    return True
