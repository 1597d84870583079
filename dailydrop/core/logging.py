"""
Structured logging for the drop scheduler.

- JSON lines in production, one readable line per record in development.
- request_id (HTTP) and agent_id (drop cycles) are bound through context
  variables and stamped onto every record by ContextFilter.
- log_event() emits drop lifecycle events with bounded field sizes.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, Union

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
agent_id_ctx_var: ContextVar[Optional[str]] = ContextVar("agent_id", default=None)

APP_LOGGER = "dailydrop"
MAX_FIELD_CHARS = 500

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}
_CONTEXT_ATTRS = ("request_id", "agent_id")


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def get_agent_id(default: Optional[str] = None) -> Optional[str]:
    aid = agent_id_ctx_var.get()
    return aid if aid is not None else default


@contextmanager
def bind_agent(agent_id: str) -> Iterator[None]:
    """Attribute every record logged inside the block to ``agent_id``."""
    token = agent_id_ctx_var.set(agent_id)
    try:
        yield
    finally:
        agent_id_ctx_var.reset(token)


def safe_value(value, limit: int = MAX_FIELD_CHARS):
    """Scalars pass through; anything else is stringified and cut at ``limit`` chars."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms")):
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _utc_stamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _extras(record: logging.LogRecord) -> Dict[str, object]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and key not in _CONTEXT_ATTRS and value is not None
    }


class ContextFilter(logging.Filter):
    """Stamp request_id and agent_id from context unless the call passed them explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        if getattr(record, "agent_id", None) is None:
            record.agent_id = get_agent_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": _utc_stamp(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for attr in _CONTEXT_ATTRS:
            value = getattr(record, attr, None)
            if value is not None:
                payload[attr] = value
        payload.update(_extras(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_utc_stamp(record), f"{record.levelname:<7}"]
        if getattr(record, "agent_id", None):
            parts.append(f"agent={record.agent_id}")
        if getattr(record, "request_id", None):
            parts.append(f"rid={record.request_id}")
        parts.append(record.getMessage())
        parts.extend(f"{k}={v}" for k, v in sorted(_extras(record).items()))
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: Union[int, str, None] = None) -> None:
    """Route the ``dailydrop`` logger to stdout; JSON in production.

    ``level`` falls back to DAILYDROP_LOG_LEVEL, then INFO.
    """
    if level is None:
        level = os.getenv("DAILYDROP_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(ContextFilter())

    logger = logging.getLogger(APP_LOGGER)
    logger.setLevel(level)
    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn keeps its own access/error handlers; httpx logs every request at INFO
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False
    logging.getLogger("httpx").setLevel(logging.WARNING)


def log_event(
    level: str,
    msg: str,
    *,
    agent_id: Optional[str] = None,
    drop_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    """Emit one drop lifecycle event on the app logger."""
    logger = logging.getLogger(APP_LOGGER)
    if not logger.handlers:
        configure_logging(os.getenv("DAILYDROP_ENV", "development"))

    fields: Dict[str, object] = {"agent_id": agent_id or get_agent_id(), "drop_id": drop_id}
    if event_type:
        fields["event_type"] = event_type
    if error_code:
        fields["error_code"] = error_code
    for key, value in (extra or {}).items():
        fields[key] = safe_value(value)

    getattr(logger, level, logger.info)(msg, extra=fields)
