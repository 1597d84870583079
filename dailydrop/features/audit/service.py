import logging
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from sqlalchemy import insert, select

from dailydrop.core.config import settings
from dailydrop.core.database import streak_audit, get_engine, get_database_url
from dailydrop.core.logging import get_request_id, safe_value

logger = logging.getLogger(__name__)

_memory_events: List[Dict[str, Any]] = []  # Fallback buffer when DB is unavailable


def record_audit_event(
    *,
    action: str,
    agent_id: Optional[str],
    actor: str = "system",
    metadata: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[Dict[str, Any]]:
    """Record a protective or privileged streak action.

    Notes:
    - Respects AUDIT_ENABLED.
    - Never raises: an audit write failure is logged and buffered in memory so
      the scheduling path is not blocked.
    """
    if not settings.AUDIT_ENABLED:
        return None

    safe_metadata = None
    if metadata:
        safe_metadata = {k: safe_value(v) for k, v in metadata.items()}

    record = {
        "ts": now or datetime.now(timezone.utc),
        "action": action,
        "agent_id": agent_id,
        "actor": actor,
        "request_id": request_id or get_request_id(),
        "metadata": safe_metadata,
    }

    logger.info(
        "audit.%s",
        action,
        extra={"agent_id": agent_id, "actor": actor, "audit_metadata": safe_metadata},
    )

    if not get_database_url():
        _memory_events.append(record)
        return record

    try:
        with get_engine().begin() as conn:
            conn.execute(insert(streak_audit).values(**record))
    except Exception:
        logger.warning("Audit write failed; buffering in memory", exc_info=True)
        _memory_events.append(record)
    return record


def list_audit_events(agent_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    if get_database_url():
        try:
            query = select(streak_audit).order_by(streak_audit.c.ts.desc()).limit(limit)
            if agent_id:
                query = query.where(streak_audit.c.agent_id == agent_id)
            with get_engine().connect() as conn:
                return [dict(row._mapping) for row in conn.execute(query)]
        except Exception:
            logger.warning("Audit read failed; returning buffered events", exc_info=True)

    events = [e for e in _memory_events if agent_id is None or e["agent_id"] == agent_id]
    return list(reversed(events))[:limit]


def clear_memory_events() -> None:
    """FOR TESTING ONLY."""
    _memory_events.clear()
