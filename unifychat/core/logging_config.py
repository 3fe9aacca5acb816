"""
Logging setup for the dispatcher.

Two pieces of ambient context are attached to every record:

    • the HTTP request being served (request_id, method, endpoint), set by
      ``RequestLoggingMiddleware``
    • the message being dispatched (message_id, channel), bound with
      ``dispatch_context`` around scheduler and facade sends

Production writes one JSON object per line; every other environment gets
a coloured single-line console format. Recipients never reach the log in
clear: call ``mask_recipient`` before logging an address.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from unifychat.core.config import Settings, get_settings

_request_ctx: ContextVar[Optional[Dict[str, Any]]] = ContextVar("request_ctx", default=None)
_dispatch_ctx: ContextVar[Optional[Dict[str, str]]] = ContextVar("dispatch_ctx", default=None)

# extra={...} keys copied onto the JSON line
_PROMOTED = (
    "message_id", "channel", "status", "action", "latency_ms",
    "duration_ms", "status_code", "vendor_message_id",
)

_EMAIL_RE = re.compile(r"^([^@]{1,2})[^@]*(@.+)$")
_WHATSAPP_PREFIX = "whatsapp:"


# ═══════════════════════════════════════════════════════════════════════════
# Context
# ═══════════════════════════════════════════════════════════════════════════

def set_request_context(**kwargs: Any):
    """Bind request fields; returns the token for ``reset_request_context``."""
    return _request_ctx.set(kwargs or None)


def reset_request_context(token) -> None:
    _request_ctx.reset(token)


def get_request_context() -> Dict[str, Any]:
    return _request_ctx.get() or {}


@contextmanager
def dispatch_context(message_id: str, channel: str) -> Iterator[None]:
    """Tag every record logged inside the block with the message being sent."""
    token = _dispatch_ctx.set({"message_id": message_id, "channel": channel})
    try:
        yield
    finally:
        _dispatch_ctx.reset(token)


def get_dispatch_context() -> Dict[str, str]:
    return _dispatch_ctx.get() or {}


def mask_recipient(address: Optional[str]) -> str:
    """
    Shorten a phone number or email address for logs.

        +15551234567           → +1555***4567
        whatsapp:+15551234567  → whatsapp:+1555***4567
        alice@example.com      → al***@example.com
    """
    if not address:
        return ""
    prefix = ""
    if address.startswith(_WHATSAPP_PREFIX):
        prefix, address = _WHATSAPP_PREFIX, address[len(_WHATSAPP_PREFIX):]
    match = _EMAIL_RE.match(address)
    if match:
        return f"{prefix}{match.group(1)}***{match.group(2)}"
    if len(address) <= 6:
        return prefix + "***"
    return f"{prefix}{address[:5]}***{address[-4:]}"


# ═══════════════════════════════════════════════════════════════════════════
# Formatters
# ═══════════════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request = get_request_context()
        if request:
            entry["request"] = request
        entry.update(get_dispatch_context())

        for key in _PROMOTED:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
                "trace": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``12:00:01 INFO     [req 1a2b3c4d] [sms 9f8e7d6c] logger: text``"""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, self.RESET)
        tags = []

        request_id = get_request_context().get("request_id")
        if request_id:
            tags.append(f"[req {request_id[:8]}]")
        dispatch = get_dispatch_context()
        if dispatch:
            tags.append(f"[{dispatch['channel']} {dispatch['message_id'][:8]}]")

        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{' ' + ' '.join(tags) if tags else ''} {record.name}: {record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ═══════════════════════════════════════════════════════════════════════════
# Setup
# ═══════════════════════════════════════════════════════════════════════════

def setup_logging(settings: Optional[Settings] = None) -> None:
    """Install the stdout handler on the root and uvicorn loggers."""
    settings = settings or get_settings()
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else ConsoleFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    # uvicorn logs through our handler; its access log duplicates the middleware line
    for name in ("uvicorn", "uvicorn.error"):
        uv = logging.getLogger(name)
        uv.handlers = [handler]
        uv.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
