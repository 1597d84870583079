from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import List, Optional

from dailydrop.models.streak import AgentStreakRecord, StreakStatus

DEFAULT_PROTECTION = timedelta(hours=24)


class StreakIntegrityEngine:
    """Pure streak decisions over a record snapshot.

    Nothing here touches storage or raises on bad input: callers check
    ``invariant_violations`` before trusting a record and write results back
    through the store's versioned ``put``.
    """

    def __init__(self, protection_duration: timedelta = DEFAULT_PROTECTION):
        self._protection_duration = protection_duration

    @property
    def protection_duration(self) -> timedelta:
        return self._protection_duration

    # Reads -------------------------------------------------------------
    def evaluate(self, record: AgentStreakRecord, now: datetime, tz: Optional[tzinfo] = None) -> StreakStatus:
        now = _aware(now)
        today = local_day(now, tz)
        started = today >= record.practice_start_date
        dropped_today = record.last_drop_date is not None and record.last_drop_date >= today

        streak_intact = True
        needs_protection = False
        days_until_break = 1

        if started and record.last_drop_date is not None:
            gap = (today - record.last_drop_date).days
            if gap == 1:
                needs_protection = True
                days_until_break = 0
            elif gap > 1:
                if self._protection_valid(record, now):
                    remaining = record.protection_expires_at - now
                    days_until_break = int(remaining.total_seconds() // 3600) // 24
                else:
                    streak_intact = False
                    days_until_break = 0

        return StreakStatus(
            agent_id=record.agent_id,
            current_streak=record.current_streak,
            longest_streak=record.longest_streak,
            streak_intact=streak_intact,
            needs_protection=needs_protection,
            days_until_break=days_until_break,
            local_today=today,
            last_drop_date=record.last_drop_date,
            total_drops=record.total_drops,
            protection_active=record.protection_active,
            protection_expires_at=record.protection_expires_at,
            dropped_today=dropped_today,
            practice_started=started,
        )

    def has_dropped_today(self, record: AgentStreakRecord, now: datetime, tz: Optional[tzinfo] = None) -> bool:
        return record.last_drop_date is not None and record.last_drop_date >= local_day(_aware(now), tz)

    # Writes (return new records) ---------------------------------------
    def commit(
        self,
        record: AgentStreakRecord,
        now: datetime,
        tz: Optional[tzinfo] = None,
        *,
        is_emergency: bool = False,
    ) -> AgentStreakRecord:
        """Apply one successful drop.

        A second commit on the same local day returns the record unchanged;
        total_drops counts distinct days with a drop. ``is_emergency`` is
        accepted for the audit trail only and never alters the arithmetic.
        """
        now = _aware(now)
        today = local_day(now, tz)

        if record.last_drop_date is not None and record.last_drop_date >= today:
            return record

        if record.last_drop_date is None:
            current = 1
        else:
            gap = (today - record.last_drop_date).days
            if gap == 1 or self._protection_valid(record, now):
                current = record.current_streak + 1
            else:
                current = 1

        return replace(
            record,
            current_streak=current,
            longest_streak=max(record.longest_streak, current),
            last_drop_date=today,
            total_drops=record.total_drops + 1,
            protection_active=False,
            protection_expires_at=None,
        )

    def activate_protection(
        self,
        record: AgentStreakRecord,
        now: datetime,
        duration: Optional[timedelta] = None,
    ) -> AgentStreakRecord:
        window = duration if duration is not None else self._protection_duration
        return replace(
            record,
            protection_active=True,
            protection_expires_at=_aware(now).astimezone(timezone.utc) + window,
        )

    def emergency_restore(
        self,
        record: AgentStreakRecord,
        now: datetime,
        streak_value: int,
        duration: Optional[timedelta] = None,
    ) -> AgentStreakRecord:
        """Operator-only: force the current streak and open a protection window."""
        restored = replace(
            record,
            current_streak=streak_value,
            longest_streak=max(record.longest_streak, streak_value),
        )
        return self.activate_protection(restored, now, duration)

    # Preconditions -----------------------------------------------------
    @staticmethod
    def invariant_violations(record: AgentStreakRecord) -> List[str]:
        problems: List[str] = []
        if record.current_streak < 0:
            problems.append("current_streak is negative")
        if record.longest_streak < record.current_streak:
            problems.append("longest_streak is below current_streak")
        if record.total_drops < 0:
            problems.append("total_drops is negative")
        if record.protection_active and record.protection_expires_at is None:
            problems.append("protection_active without protection_expires_at")
        if not record.protection_active and record.protection_expires_at is not None:
            problems.append("protection_expires_at set without protection_active")
        if record.protection_expires_at is not None and record.protection_expires_at.tzinfo is None:
            problems.append("protection_expires_at is naive")
        return problems

    @staticmethod
    def _protection_valid(record: AgentStreakRecord, now: datetime) -> bool:
        return (
            record.protection_active
            and record.protection_expires_at is not None
            and record.protection_expires_at > now
        )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_day(now: datetime, tz: Optional[tzinfo] = None) -> date:
    """Calendar date of ``now`` in ``tz`` (UTC when omitted)."""
    return _aware(now).astimezone(tz or timezone.utc).date()


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


# Singleton engine used by services and routes
streak_engine = StreakIntegrityEngine()
