"""
Structured logging configuration.

Provides:
    • JSON lines in production, one object per record
    • Coloured console lines in development, with the alert / rule /
      location a record refers to appended as ``key=value`` tags
    • Request-scoped context (request_id, client_ip, user_agent, endpoint)

Modules log through the standard library and attach identifiers with
``extra``:

    logger = logging.getLogger(__name__)
    logger.info("Alert %s sent to %d recipients", aid, n,
                extra={"alert_id": aid, "recipient_count": n})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from skyguard.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

# (record attribute, short tag used on console lines)
_EXTRA_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("alert_id", "alert"),
    ("recipient_count", "n"),
    ("channel", "via"),
    ("location", "loc"),
    ("rule_id", "rule"),
    ("duration_ms", "ms"),
    ("status_code", "status"),
    ("endpoint", "endpoint"),
)

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "aiosqlite")


def set_request_context(**kwargs: Any) -> None:
    """Set request-scoped log context (call from middleware)."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def _extras(record: logging.LogRecord) -> List[Tuple[str, str, Any]]:
    return [
        (attr, tag, getattr(record, attr))
        for attr, tag in _EXTRA_FIELDS
        if getattr(record, attr, None) is not None
    ]


def _exception_summary(record: logging.LogRecord) -> Optional[Dict[str, str]]:
    if not (record.exc_info and record.exc_info[1]):
        return None
    exc = record.exc_info[1]
    return {"type": type(exc).__name__, "message": str(exc)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for the log shipper."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        ctx = get_request_context()
        if ctx:
            entry["context"] = ctx
        for attr, _tag, value in _extras(record):
            entry[attr] = value
        exc = _exception_summary(record)
        if exc:
            entry["exception"] = exc
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Coloured single-line output for local development."""

    COLORS = {
        "DEBUG":    "\033[36m",
        "INFO":     "\033[32m",
        "WARNING":  "\033[33m",
        "ERROR":    "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        request_id = get_request_context().get("request_id")
        prefix = f" [{request_id[:8]}]" if request_id else ""
        tags = "".join(f" {tag}={value}" for _attr, tag, value in _extras(record))

        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{prefix} {record.name}: {record.getMessage()}{tags}"
        )
        exc = _exception_summary(record)
        if exc:
            line += f"\n  {exc['type']}: {exc['message']}"
        return line


def setup_logging(level: Optional[str] = None) -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    name = (level or settings.LOG_LEVEL).upper()
    root.setLevel(getattr(logging, name, logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    root.addHandler(handler)

    for noisy in _QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
