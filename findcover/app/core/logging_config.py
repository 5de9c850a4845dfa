"""
Structured logging for the shelter service.

Two output shapes, chosen by environment:

    production    one JSON object per line, shelter/alert/user ids as
                  top-level keys so log search can pivot on them
    otherwise     coloured single-line console output with the same ids
                  appended as ``key=value`` pairs

Request-scoped context (request id, client ip, endpoint, and the user id
once a handler has parsed it) lives in a ContextVar set by
``RequestLoggingMiddleware``.

Usage:
    from findcover.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Shelter assigned", extra={"user_id": 7, "shelter_id": 3})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from findcover.app.core.config import Settings, settings as default_settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

# ``extra=`` keys promoted onto log lines, with their console labels.
_DOMAIN_FIELDS = {
    "user_id": "user",
    "shelter_id": "shelter",
    "alert_id": "alert",
    "zone_name": "zone",
    "distance_km": "km",
    "assigned_count": "assigned",
    "duration_ms": "ms",
    "status_code": "status",
    "endpoint": "endpoint",
}

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "redis")


def set_request_context(**kwargs: Any) -> None:
    """Replace the request context (middleware, at request start)."""
    _request_context.set(kwargs)


def bind_request_context(**kwargs: Any) -> None:
    """Add keys to the current request context, e.g. user_id once known."""
    _request_context.set({**_request_context.get(), **kwargs})


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def _domain_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: getattr(record, key)
        for key in _DOMAIN_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON document per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(_domain_fields(record))

        ctx = get_request_context()
        if ctx:
            entry["request"] = ctx

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = {"type": type(exc).__name__, "message": str(exc)}

        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Console output for local runs and the simulator."""

    LEVEL_COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelname, self.RESET)
        line = (
            f"{colour}{self.formatTime(record, '%H:%M:%S')} "
            f"{record.levelname:8s}{self.RESET} "
        )

        request_id = get_request_context().get("request_id")
        if request_id:
            line += f"[{request_id[:8]}] "

        line += f"{record.name}: {record.getMessage()}"

        fields = _domain_fields(record)
        ctx_user = get_request_context().get("user_id")
        if "user_id" not in fields and ctx_user is not None:
            fields["user_id"] = ctx_user
        if fields:
            line += "  " + " ".join(
                f"{_DOMAIN_FIELDS[k]}={v}" for k, v in fields.items()
            )

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            line += f"\n  {type(exc).__name__}: {exc}"
        return line


def setup_logging(config: Settings = default_settings, json_output: Optional[bool] = None) -> None:
    """
    Install a single stdout handler on the root logger.

    ``json_output`` defaults to True in production.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    use_json = config.is_production if json_output is None else json_output
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter())
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
