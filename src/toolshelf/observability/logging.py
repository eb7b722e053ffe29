"""Logging setup for Toolshelf.

Request-scoped fields (request id, caller, tool) live in contextvars and are
stamped onto every record by ``LogContextFilter``. Production emits one JSON
object per line; everything else gets a compact human-readable line.
"""

import json
import logging
import sys
from contextvars import ContextVar
from typing import Dict, Optional

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_caller_id: ContextVar[Optional[str]] = ContextVar("caller_id", default=None)
_tool_id: ContextVar[Optional[str]] = ContextVar("tool_id", default=None)

# ToolIds are 64 hex chars; a prefix is enough to grep for.
TOOL_ID_LOG_LENGTH = 12

CONTEXT_FIELDS = ("request_id", "caller_id", "tool_id")

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore", "aiosqlite")


def set_log_context(
    request_id: Optional[str] = None,
    caller_id: Optional[str] = None,
    tool_id: Optional[str] = None,
):
    """Bind fields for the current async context. ``None`` leaves a field as is."""
    if request_id is not None:
        _request_id.set(request_id)
    if caller_id is not None:
        _caller_id.set(caller_id)
    if tool_id is not None:
        _tool_id.set(tool_id)


def clear_log_context():
    for var in (_request_id, _caller_id, _tool_id):
        var.set(None)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def current_log_context() -> Dict[str, str]:
    context = {
        "request_id": _request_id.get(),
        "caller_id": _caller_id.get(),
        "tool_id": _tool_id.get(),
    }
    if context["tool_id"]:
        context["tool_id"] = context["tool_id"][:TOOL_ID_LOG_LENGTH]
    return {key: value for key, value in context.items() if value}


class LogContextFilter(logging.Filter):
    """Copy the bound context onto each record as attributes."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = current_log_context()
        for field in CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, context.get(field))
        return True


def _record_context(record: logging.LogRecord) -> Dict[str, str]:
    # Records that never passed the filter (e.g. formatted directly) fall back
    # to the live context.
    if not hasattr(record, CONTEXT_FIELDS[0]):
        return current_log_context()
    return {
        field: getattr(record, field)
        for field in CONTEXT_FIELDS
        if getattr(record, field, None)
    }


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **_record_context(record),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``time LEVEL logger: message [req=.., caller=.., tool=..]``"""

    _LABELS = {"request_id": "req", "caller_id": "caller", "tool_id": "tool"}

    def format(self, record: logging.LogRecord) -> str:
        line = "{} {:<7} {}: {}".format(
            self.formatTime(record, self.datefmt),
            record.levelname,
            record.name,
            record.getMessage(),
        )
        context = _record_context(record)
        if context:
            tags = ", ".join(f"{self._LABELS[key]}={value}" for key, value in context.items())
            line = f"{line} [{tags}]"
        if record.exc_info and record.exc_info[1]:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(environment: str = "development", log_level: str = "INFO"):
    """Install a single stdout handler on the root logger.

    Args:
        environment: "production" selects JSON output.
        log_level: Root level name; unknown names fall back to INFO.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(LogContextFilter())
    if environment == "production":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter(datefmt="%H:%M:%S"))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
