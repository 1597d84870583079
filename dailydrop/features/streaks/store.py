"""
Streak record storage.

In-memory implementation plus store selection; the SQL implementation lives
in store_sql.py and keeps the same interface. Every write is a versioned put:
``put`` succeeds only if the stored version still equals
``expected_version`` and bumps it by one.
"""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import replace
from datetime import date
from typing import Dict, List, Optional, Protocol

from dailydrop.core.errors import NotFoundError
from dailydrop.models.streak import AgentStreakRecord

logger = logging.getLogger("dailydrop.streaks.store")


class StreakStore(Protocol):
    def get(self, agent_id: str) -> AgentStreakRecord: ...

    def put(self, agent_id: str, record: AgentStreakRecord, expected_version: int) -> bool: ...

    def initialize(
        self,
        agent_id: str,
        practice_start_date: date,
        cadence: str = "daily",
        practice_name: Optional[str] = None,
    ) -> AgentStreakRecord: ...

    def list_agent_ids(self) -> List[str]: ...


class InMemoryStreakStore:
    """Thread-safe dict-backed store with compare-and-swap puts."""

    def __init__(self):
        self._records: Dict[str, AgentStreakRecord] = {}
        self._lock = threading.Lock()

    def get(self, agent_id: str) -> AgentStreakRecord:
        with self._lock:
            record = self._records.get(agent_id)
        if record is None:
            raise NotFoundError(f"No streak record for {agent_id}")
        return record

    def put(self, agent_id: str, record: AgentStreakRecord, expected_version: int) -> bool:
        with self._lock:
            current = self._records.get(agent_id)
            if current is None:
                raise NotFoundError(f"No streak record for {agent_id}")
            if current.version != expected_version:
                return False
            self._records[agent_id] = replace(record, agent_id=agent_id, version=expected_version + 1)
            return True

    def initialize(
        self,
        agent_id: str,
        practice_start_date: date,
        cadence: str = "daily",
        practice_name: Optional[str] = None,
    ) -> AgentStreakRecord:
        with self._lock:
            existing = self._records.get(agent_id)
            if existing is not None:
                return existing
            record = AgentStreakRecord(
                agent_id=agent_id,
                practice_start_date=practice_start_date,
                practice_name=practice_name,
                cadence=cadence,
            )
            self._records[agent_id] = record
            return record

    def list_agent_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._records)

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with self._lock:
            self._records.clear()


def get_streak_store() -> StreakStore:
    """
    Pick the store implementation.

    - SQL when DAILYDROP_DATABASE_URL (or the test URL) is set and reachable
    - In-memory otherwise, which only suits tests and single-process dev runs
    """
    from dailydrop.core.database import get_database_url

    if get_database_url():
        try:
            from dailydrop.core.database import check_connection, create_all_tables
            from dailydrop.features.streaks.store_sql import SqlStreakStore

            if check_connection():
                create_all_tables()
                return SqlStreakStore()
            logger.warning("[streak_store] database unavailable, falling back to in-memory")
        except Exception as e:
            logger.warning(f"[streak_store] failed to initialize SQL store: {e}; falling back to in-memory")

    if os.getenv("DAILYDROP_ENV", "development").lower() == "production":
        logger.error("[streak_store] running production with an in-memory streak store")
    return InMemoryStreakStore()
