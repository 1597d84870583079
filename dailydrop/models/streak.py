from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Optional


@dataclass(frozen=True)
class AgentStreakRecord:
    """
    Durable streak state for one agent. Dates are agent-local, timestamps UTC.

    Instances are immutable; the streak engine returns new records and the
    store persists them with an expected version.
    """

    agent_id: str
    practice_start_date: date
    current_streak: int = 0
    longest_streak: int = 0
    last_drop_date: Optional[date] = None
    total_drops: int = 0
    protection_active: bool = False
    protection_expires_at: Optional[datetime] = None
    practice_name: Optional[str] = None
    cadence: str = "daily"
    version: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["practice_start_date"] = self.practice_start_date.isoformat()
        data["last_drop_date"] = self.last_drop_date.isoformat() if self.last_drop_date else None
        data["protection_expires_at"] = (
            self.protection_expires_at.isoformat() if self.protection_expires_at else None
        )
        return data


@dataclass(frozen=True)
class StreakStatus:
    agent_id: str
    current_streak: int
    longest_streak: int
    streak_intact: bool
    needs_protection: bool
    days_until_break: int
    local_today: date
    last_drop_date: Optional[date]
    total_drops: int
    protection_active: bool
    protection_expires_at: Optional[datetime]
    dropped_today: bool
    practice_started: bool

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "streak_intact": self.streak_intact,
            "needs_protection": self.needs_protection,
            "days_until_break": self.days_until_break,
            "local_today": self.local_today.isoformat(),
            "last_drop_date": self.last_drop_date.isoformat() if self.last_drop_date else None,
            "total_drops": self.total_drops,
            "protection_active": self.protection_active,
            "protection_expires_at": (
                self.protection_expires_at.isoformat() if self.protection_expires_at else None
            ),
            "dropped_today": self.dropped_today,
            "practice_started": self.practice_started,
        }
