"""
Structured logging configuration.

Two output modes:
    • production  → one JSON object per line (alert_id, round, channel ...
                    lifted out of ``extra`` so log queries can filter on them)
    • otherwise   → compact coloured lines for a terminal

Context fields (request id, caller, alert being processed) live in a
ContextVar. ``log_context`` scopes them to a block, so every line logged
while the escalation sweep handles one alert carries that alert's id
without passing it to each call.

Usage:
    from hosla.app.core.logging_config import log_context, setup_logging

    setup_logging()
    with log_context(alert_id=alert.alert_id):
        logger.info("Reminder round sent")
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from hosla.app.core.config import settings

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

# Attributes passed through ``extra=`` that are promoted to top-level JSON keys
_EXTRA_KEYS = (
    "alert_id", "originator_id", "contact_id", "round", "escalation_level",
    "priority", "channel", "duration_ms", "status_code", "endpoint",
)


def get_log_context() -> Dict[str, Any]:
    return _log_context.get()


@contextmanager
def log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """Merge ``fields`` into the log context for the duration of the block."""
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


# ── JSON (production) ──

class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        ctx = get_log_context()
        if ctx:
            entry["ctx"] = ctx
        entry.update(
            (key, getattr(record, key)) for key in _EXTRA_KEYS if hasattr(record, key)
        )
        if record.exc_info and record.exc_info[1] is not None:
            entry["error"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
                "trace": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


# ── Console (development / test) ──

class PrettyFormatter(logging.Formatter):
    """``09:31:02 WARNING  [req 1a2b3c4d|alert 9f8e7d6c] logger: message``"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        ctx = get_log_context()
        alert_id = getattr(record, "alert_id", None) or ctx.get("alert_id")

        tags = []
        if ctx.get("request_id"):
            tags.append(f"req {ctx['request_id'][:8]}")
        if alert_id:
            tags.append(f"alert {str(alert_id)[:8]}")
        tag_str = f" [{'|'.join(tags)}]" if tags else ""

        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{tag_str} {record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1] is not None:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Install one stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    use_json = settings.is_production if json_output is None else json_output
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
