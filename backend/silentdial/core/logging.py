"""
SilentDial - Structured Logging

Log records carry the session and provider conversation they belong to.
Call lifecycle milestones are logged as typed events with a structured
payload so that production JSON logs can be filtered per event.

Identifiers, phone numbers and credentials are masked before they reach a
handler: a log line must never be enough to call the destination number or
reuse a provider key.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# =============================================================================
# Context Variables
# =============================================================================

session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
conversation_id_var: ContextVar[Optional[str]] = ContextVar("conversation_id", default=None)


# =============================================================================
# Masking
# =============================================================================

# Substrings of payload keys whose values are masked
SENSITIVE_KEY_PARTS = frozenset({
    "phone", "number", "callee", "api_key", "api-key",
    "password", "token", "secret", "key",
})


def mask_session_id(sid: Optional[str]) -> Optional[str]:
    """Keep only the random suffix of ``emergency_<ms>_<suffix>``."""
    if not sid:
        return None
    return sid[-9:] if len(sid) > 9 else sid


def mask_conversation_id(cid: Optional[str]) -> Optional[str]:
    """``***`` plus the last 4 characters."""
    if not cid:
        return None
    return f"***{cid[-4:]}" if len(cid) > 4 else "***"


def _mask_value(value: Any) -> Any:
    if isinstance(value, str):
        return f"***{value[-2:]}" if len(value) > 2 else "***"
    return "[REDACTED]"


def mask_sensitive_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Copy of ``data`` with sensitive values masked, recursing into dicts and lists.

    Strings keep their last two characters; any other sensitive value is
    replaced with ``[REDACTED]``.
    """
    masked: Dict[str, Any] = {}
    for key, value in data.items():
        lowered = str(key).lower()
        if any(part in lowered for part in SENSITIVE_KEY_PARTS):
            masked[key] = _mask_value(value)
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_data(value)
        elif isinstance(value, list):
            masked[key] = [mask_sensitive_data(v) if isinstance(v, dict) else v for v in value]
        else:
            masked[key] = value
    return masked


def _context_fields() -> Dict[str, str]:
    """Masked context ids for the current task."""
    fields = {}
    session_id = session_id_var.get()
    if session_id:
        fields["session_id"] = mask_session_id(session_id)
    conversation_id = conversation_id_var.get()
    if conversation_id:
        fields["conversation_id"] = mask_conversation_id(conversation_id)
    return fields


# =============================================================================
# Call Events
# =============================================================================

class CallEvent(str, Enum):
    """Call lifecycle milestones worth filtering on."""
    REPORT_RECEIVED = "report_received"
    RATE_LIMITED = "rate_limited"
    ADMISSION_DENIED = "admission_denied"
    CALL_ACTIVE = "call_active"
    CALL_FAILED = "call_failed"
    FALLBACK = "fallback"


def log_call_event(
    logger: logging.Logger,
    level: int,
    event: CallEvent,
    message: str,
    *args: Any,
    **data: Any,
) -> None:
    """
    Log ``message % args`` tagged with ``event`` and a structured payload.

    Usage:
        log_call_event(logger, logging.WARNING, CallEvent.ADMISSION_DENIED,
                       "Call admission denied: %s", reason, retry_after=20)
    """
    logger.log(level, message, *args, extra={"event_type": event.value, "data": data})


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line.

    {
        "timestamp": "2024-05-01T12:00:00.000000Z",
        "level": "INFO",
        "logger": "silentdial.core.call_service",
        "message": "AI call active",
        "session_id": "k2j4h5g6f",
        "conversation_id": "***1234",
        "event_type": "call_active",
        "data": {...}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context_fields())

        event_type = getattr(record, "event_type", None)
        if event_type:
            entry["event_type"] = event_type

        data = getattr(record, "data", None)
        if data:
            entry["data"] = mask_sensitive_data(data)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """`2024-05-01 12:00:00 | INFO     | logger [session=..., conv=...] | message`"""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        context = _context_fields()
        parts = []
        if "session_id" in context:
            parts.append(f"session={context['session_id']}")
        if "conversation_id" in context:
            parts.append(f"conv={context['conversation_id']}")
        event_type = getattr(record, "event_type", None)
        if event_type:
            parts.append(f"event={event_type}")
        context_str = f" [{', '.join(parts)}]" if parts else ""

        line = f"{timestamp} | {record.levelname:<8} | {record.name}{context_str} | {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# =============================================================================
# Setup
# =============================================================================

def setup_structured_logging(level: str = "INFO", json_format: bool = False) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines for production, human-readable otherwise
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)
    root.addHandler(handler)

    # Library chatter stays at WARNING regardless of app level
    for name in ("uvicorn.access", "websockets", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


class LogContext:
    """
    Bind a session and/or conversation id to log records for a block.

    Usage:
        with LogContext(session_id=session_id):
            logger.info("Emergency report received")
    """

    def __init__(self, session_id: Optional[str] = None, conversation_id: Optional[str] = None):
        self._values = [
            (var, value)
            for var, value in ((session_id_var, session_id), (conversation_id_var, conversation_id))
            if value
        ]
        self._tokens = []

    def __enter__(self) -> "LogContext":
        self._tokens = [(var, var.set(value)) for var, value in self._values]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []
        return False
