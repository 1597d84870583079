"""
Append-only drop log.

DropRecords are written once when a strategy yields an artifact and never
mutated. The streak engine does not read them; they exist for audit and for
drop numbering (`count` gives the next drop number).
"""
from __future__ import annotations

import logging
import threading
from datetime import timezone
from typing import List, Optional, Protocol

from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError

from dailydrop.core.database import drops, get_engine
from dailydrop.models.drop import DropRecord

logger = logging.getLogger("dailydrop.drops.log")


class DropLog(Protocol):
    def append(self, drop: DropRecord) -> bool: ...

    def list_for(self, agent_id: str, limit: Optional[int] = None) -> List[DropRecord]: ...

    def count(self, agent_id: str) -> int: ...


class InMemoryDropLog:
    def __init__(self):
        self._drops: List[DropRecord] = []
        self._lock = threading.Lock()

    def append(self, drop: DropRecord) -> bool:
        """Append a drop; returns False if (agent_id, drop_id) was already logged."""
        with self._lock:
            if any(d.agent_id == drop.agent_id and d.drop_id == drop.drop_id for d in self._drops):
                return False
            self._drops.append(drop)
            return True

    def list_for(self, agent_id: str, limit: Optional[int] = None) -> List[DropRecord]:
        with self._lock:
            matching = [d for d in self._drops if d.agent_id == agent_id]
        matching.sort(key=lambda d: d.created_at, reverse=True)
        return matching[:limit] if limit else matching

    def count(self, agent_id: str) -> int:
        with self._lock:
            return sum(1 for d in self._drops if d.agent_id == agent_id)

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with self._lock:
            self._drops.clear()


class SqlDropLog:
    def __init__(self, engine=None):
        self._engine = engine

    @property
    def engine(self):
        return self._engine or get_engine()

    def append(self, drop: DropRecord) -> bool:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(drops).values(
                        agent_id=drop.agent_id,
                        drop_id=drop.drop_id,
                        local_day=drop.local_day,
                        created_at=drop.created_at,
                        is_emergency=drop.is_emergency,
                        strategy=drop.strategy,
                        trigger=drop.trigger,
                        practice_day=drop.practice_day,
                        drop_number=drop.drop_number,
                        title=drop.title,
                    )
                )
            return True
        except IntegrityError:
            return False

    def list_for(self, agent_id: str, limit: Optional[int] = None) -> List[DropRecord]:
        query = (
            select(drops)
            .where(drops.c.agent_id == agent_id)
            .order_by(drops.c.created_at.desc(), drops.c.id.desc())
        )
        if limit:
            query = query.limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [
            DropRecord(
                agent_id=row.agent_id,
                drop_id=row.drop_id,
                local_day=row.local_day,
                created_at=row.created_at if row.created_at.tzinfo else row.created_at.replace(tzinfo=timezone.utc),
                is_emergency=bool(row.is_emergency),
                strategy=row.strategy,
                trigger=row.trigger,
                practice_day=row.practice_day,
                drop_number=row.drop_number,
                title=row.title,
            )
            for row in rows
        ]

    def count(self, agent_id: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(drops).where(drops.c.agent_id == agent_id)
            ).scalar() or 0


def get_drop_log() -> DropLog:
    """SQL when a reachable database is configured, in-memory otherwise."""
    from dailydrop.core.database import check_connection, create_all_tables, get_database_url

    if get_database_url():
        try:
            if check_connection():
                create_all_tables()
                return SqlDropLog()
            logger.warning("[drop_log] database unavailable, falling back to in-memory")
        except Exception as e:
            logger.warning(f"[drop_log] failed to initialize SQL log: {e}; falling back to in-memory")
    return InMemoryDropLog()
