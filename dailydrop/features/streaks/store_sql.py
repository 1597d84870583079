"""
SQL-backed streak store (SQLAlchemy Core).

Maintains the interface of InMemoryStreakStore. Optimistic concurrency is an
UPDATE guarded by ``version = :expected``; a zero rowcount is a conflict.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from dailydrop.core.database import agent_streaks, get_engine
from dailydrop.core.errors import NotFoundError
from dailydrop.models.streak import AgentStreakRecord


def _row_to_record(row) -> AgentStreakRecord:
    expires = row.protection_expires_at
    if expires is not None and expires.tzinfo is None:
        # SQLite drops tzinfo; values are always written as UTC
        expires = expires.replace(tzinfo=timezone.utc)
    return AgentStreakRecord(
        agent_id=row.agent_id,
        practice_start_date=row.practice_start_date,
        current_streak=row.current_streak,
        longest_streak=row.longest_streak,
        last_drop_date=row.last_drop_date,
        total_drops=row.total_drops,
        protection_active=bool(row.protection_active),
        protection_expires_at=expires,
        practice_name=row.practice_name,
        cadence=row.cadence,
        version=row.version,
    )


class SqlStreakStore:
    def __init__(self, engine=None):
        self._engine = engine

    @property
    def engine(self):
        return self._engine or get_engine()

    def get(self, agent_id: str) -> AgentStreakRecord:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(agent_streaks).where(agent_streaks.c.agent_id == agent_id)
            ).first()
        if row is None:
            raise NotFoundError(f"No streak record for {agent_id}")
        return _row_to_record(row)

    def put(self, agent_id: str, record: AgentStreakRecord, expected_version: int) -> bool:
        stmt = (
            update(agent_streaks)
            .where(agent_streaks.c.agent_id == agent_id)
            .where(agent_streaks.c.version == expected_version)
            .values(
                current_streak=record.current_streak,
                longest_streak=record.longest_streak,
                last_drop_date=record.last_drop_date,
                total_drops=record.total_drops,
                protection_active=record.protection_active,
                protection_expires_at=record.protection_expires_at,
                version=expected_version + 1,
                updated_at=datetime.now(timezone.utc),
            )
        )
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
            if result.rowcount == 1:
                return True
            exists = conn.execute(
                select(agent_streaks.c.agent_id).where(agent_streaks.c.agent_id == agent_id)
            ).first()
        if exists is None:
            raise NotFoundError(f"No streak record for {agent_id}")
        return False

    def initialize(
        self,
        agent_id: str,
        practice_start_date: date,
        cadence: str = "daily",
        practice_name: Optional[str] = None,
    ) -> AgentStreakRecord:
        try:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(agent_streaks).where(agent_streaks.c.agent_id == agent_id)
                ).first()
                if existing is not None:
                    return _row_to_record(existing)
                conn.execute(
                    insert(agent_streaks).values(
                        agent_id=agent_id,
                        current_streak=0,
                        longest_streak=0,
                        last_drop_date=None,
                        total_drops=0,
                        protection_active=False,
                        protection_expires_at=None,
                        practice_start_date=practice_start_date,
                        practice_name=practice_name,
                        cadence=cadence,
                        version=0,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
        except IntegrityError:
            # Lost an initialize race; the winner's row stands
            pass
        return self.get(agent_id)

    def list_agent_ids(self) -> List[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(agent_streaks.c.agent_id).order_by(agent_streaks.c.agent_id)
            ).fetchall()
        return [row.agent_id for row in rows]
