"""Per-agent schedule configuration, validated once at startup."""
from __future__ import annotations

import re
from datetime import date, time
from typing import List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class WebhookSubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1)
    secret: Optional[str] = None
    active: bool = True


class AgentScheduleConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent_id: str = Field(..., min_length=1)
    timezone: str = Field(..., min_length=1)
    local_drop_time: str
    cadence: Literal["daily"] = "daily"
    practice_start_date: date
    practice_name: str = "Daily Practice"
    subscribers: List[WebhookSubscription] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown IANA timezone: {value!r}")
        return value

    @field_validator("local_drop_time")
    @classmethod
    def _hh_mm(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise ValueError(f"local_drop_time must be HH:MM, got {value!r}")
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def drop_time(self) -> time:
        hours, minutes = self.local_drop_time.split(":")
        return time(int(hours), int(minutes))
