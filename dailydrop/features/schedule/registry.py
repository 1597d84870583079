"""
Agent schedule registry.

Loads AgentScheduleConfig entries once at startup and turns "HH:MM in an IANA
zone" into concrete UTC fire instants. An agent with a broken entry is
excluded and reported; the rest still schedule.
"""
from __future__ import annotations

import json
import logging
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError as PydanticValidationError

from dailydrop.core.errors import AgentConfigError, NotFoundError
from dailydrop.models.schedule import AgentScheduleConfig

logger = logging.getLogger("dailydrop.schedule")


def local_fire_instant(day: date, drop_time: time, tz: ZoneInfo) -> datetime:
    """UTC instant of ``drop_time`` on ``day`` in ``tz``.

    fold=0 applies the pre-transition offset: a wall time skipped by a DST
    jump lands after the gap (02:30 becomes 03:30), and an ambiguous wall time
    resolves to its first occurrence.
    """
    return datetime.combine(day, drop_time).replace(tzinfo=tz, fold=0).astimezone(timezone.utc)


class AgentScheduleRegistry:
    def __init__(self, configs: Iterable[AgentScheduleConfig] = (), invalid: Optional[Mapping[str, str]] = None):
        self._configs: Dict[str, AgentScheduleConfig] = {}
        for config in configs:
            self._configs[config.agent_id] = config
        self._invalid: Dict[str, str] = dict(invalid or {})

    # Loading -----------------------------------------------------------
    @classmethod
    def from_entries(cls, entries: Iterable[Mapping]) -> "AgentScheduleRegistry":
        configs: List[AgentScheduleConfig] = []
        invalid: Dict[str, str] = {}
        for index, entry in enumerate(entries):
            agent_id = str(entry.get("agent_id") or f"<entry {index}>") if isinstance(entry, Mapping) else f"<entry {index}>"
            try:
                configs.append(parse_agent_config(entry))
            except AgentConfigError as exc:
                invalid[agent_id] = exc.message
                logger.error(
                    "[registry] invalid agent configuration; agent will not be scheduled",
                    extra={"agent_id": agent_id, "error_code": exc.code, "reason": exc.message},
                )
        return cls(configs, invalid)

    @classmethod
    def from_file(cls, path: str | Path) -> "AgentScheduleRegistry":
        """Load ``{"agents": [...]}`` or a bare list from a JSON file."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        entries = raw.get("agents", []) if isinstance(raw, dict) else raw
        if not isinstance(entries, list):
            raise AgentConfigError(f"{path}: expected a list of agents")
        registry = cls.from_entries(entries)
        logger.info(
            "[registry] loaded agents",
            extra={"path": str(path), "agents": len(registry), "invalid": len(registry.invalid)},
        )
        return registry

    # Lookup ------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._configs)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._configs

    @property
    def invalid(self) -> Dict[str, str]:
        return dict(self._invalid)

    def agent_ids(self) -> List[str]:
        return sorted(self._configs)

    def configs(self) -> List[AgentScheduleConfig]:
        return [self._configs[a] for a in self.agent_ids()]

    def get(self, agent_id: str) -> AgentScheduleConfig:
        config = self._configs.get(agent_id)
        if config is None:
            if agent_id in self._invalid:
                raise AgentConfigError(self._invalid[agent_id], agent_id=agent_id)
            raise NotFoundError(f"Agent {agent_id} is not registered")
        return config

    # Time math ---------------------------------------------------------
    def local_today(self, agent_id: str, now: datetime) -> date:
        return _aware(now).astimezone(self.get(agent_id).tz).date()

    def fire_time_on(self, agent_id: str, day: date) -> datetime:
        config = self.get(agent_id)
        return local_fire_instant(day, config.drop_time, config.tz)

    def next_fire(self, agent_id: str, now: datetime) -> datetime:
        """First fire instant strictly after ``now`` (UTC)."""
        now = _aware(now)
        config = self.get(agent_id)
        today = now.astimezone(config.tz).date()
        day = max(today, config.practice_start_date)
        candidate = local_fire_instant(day, config.drop_time, config.tz)
        while candidate <= now:
            day += timedelta(days=1)
            candidate = local_fire_instant(day, config.drop_time, config.tz)
        return candidate

    def fire_passed_today(self, agent_id: str, now: datetime) -> bool:
        """True once today's local drop time has been reached."""
        now = _aware(now)
        return now >= self.fire_time_on(agent_id, self.local_today(agent_id, now))


def parse_agent_config(entry: Mapping) -> AgentScheduleConfig:
    if not isinstance(entry, Mapping):
        raise AgentConfigError("agent entry must be an object")
    agent_id = entry.get("agent_id")
    missing = [key for key in ("agent_id", "timezone", "local_drop_time", "practice_start_date") if not entry.get(key)]
    if missing:
        raise AgentConfigError(f"missing {', '.join(missing)}", agent_id=agent_id)
    try:
        return AgentScheduleConfig.model_validate(dict(entry))
    except PydanticValidationError as exc:
        reasons = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors())
        raise AgentConfigError(reasons, agent_id=agent_id) from exc


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)
