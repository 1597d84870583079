from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional

TRAINING_DAYS = 100  # practice days before an agent counts as graduated


class DropTrigger(str, Enum):
    LOCAL_FIRE = "local_fire"
    HOURLY_SWEEP = "hourly_sweep"
    END_OF_DAY = "end_of_day"
    MANUAL = "manual"


def practice_day_for(local_day: date, practice_start_date: date) -> int:
    """1-based day of the practice; the start date itself is day 1."""
    return (local_day - practice_start_date).days + 1


def practice_phase(practice_day: Optional[int]) -> Optional[str]:
    if practice_day is None:
        return None
    return "training" if practice_day <= TRAINING_DAYS else "graduated"


@dataclass(frozen=True)
class DropRecord:
    """One recorded daily output. Append-only; never mutated after creation."""

    agent_id: str
    drop_id: str
    local_day: date
    created_at: datetime
    is_emergency: bool = False
    strategy: Optional[str] = None
    trigger: Optional[str] = None
    practice_day: Optional[int] = None
    drop_number: Optional[int] = None
    title: Optional[str] = None

    @property
    def practice_phase(self) -> Optional[str]:
        return practice_phase(self.practice_day)

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "drop_id": self.drop_id,
            "local_day": self.local_day.isoformat(),
            "created_at": self.created_at.isoformat(),
            "is_emergency": self.is_emergency,
            "strategy": self.strategy,
            "trigger": self.trigger,
            "practice_day": self.practice_day,
            "drop_number": self.drop_number,
            "practice_phase": self.practice_phase,
            "title": self.title,
        }
