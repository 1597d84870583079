import json
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

import pytest

from dailydrop.core.errors import AgentConfigError, NotFoundError
from dailydrop.features.schedule.registry import AgentScheduleRegistry, local_fire_instant, parse_agent_config

NY = {
    "agent_id": "abraham",
    "timezone": "America/New_York",
    "local_drop_time": "09:00",
    "practice_start_date": "2024-01-01",
}


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_next_fire_later_today():
    registry = AgentScheduleRegistry.from_entries([NY])
    # 08:00 EDT
    assert registry.next_fire("abraham", _utc(2024, 6, 1, 12, 0)) == _utc(2024, 6, 1, 13, 0)


def test_next_fire_rolls_to_tomorrow_once_passed():
    registry = AgentScheduleRegistry.from_entries([NY])
    assert registry.next_fire("abraham", _utc(2024, 6, 1, 13, 0)) == _utc(2024, 6, 2, 13, 0)
    assert registry.next_fire("abraham", _utc(2024, 6, 1, 15, 0)) == _utc(2024, 6, 2, 13, 0)


def test_next_fire_tracks_utc_offset_across_dst():
    registry = AgentScheduleRegistry.from_entries([NY])
    # 2024-03-10 is the spring-forward day in New York
    assert registry.next_fire("abraham", _utc(2024, 3, 9, 15, 0)) == _utc(2024, 3, 10, 13, 0)
    assert registry.next_fire("abraham", _utc(2024, 3, 8, 15, 0)) == _utc(2024, 3, 9, 14, 0)


def test_next_fire_waits_for_practice_start():
    registry = AgentScheduleRegistry.from_entries([{**NY, "practice_start_date": "2024-07-01"}])
    assert registry.next_fire("abraham", _utc(2024, 6, 1, 12, 0)) == _utc(2024, 7, 1, 13, 0)


def test_nonexistent_local_time_moves_past_gap():
    tz = ZoneInfo("America/New_York")
    # 02:30 does not exist on 2024-03-10; it resolves to 03:30 EDT
    assert local_fire_instant(date(2024, 3, 10), time(2, 30), tz) == _utc(2024, 3, 10, 7, 30)


def test_ambiguous_local_time_uses_first_occurrence():
    tz = ZoneInfo("America/New_York")
    # 01:30 happens twice on 2024-11-03; first occurrence is EDT (UTC-4)
    assert local_fire_instant(date(2024, 11, 3), time(1, 30), tz) == _utc(2024, 11, 3, 5, 30)


def test_fire_passed_today():
    registry = AgentScheduleRegistry.from_entries([NY])
    assert registry.fire_passed_today("abraham", _utc(2024, 6, 1, 12, 59)) is False
    assert registry.fire_passed_today("abraham", _utc(2024, 6, 1, 13, 0)) is True


def test_local_today_in_agent_timezone():
    registry = AgentScheduleRegistry.from_entries([NY])
    assert registry.local_today("abraham", _utc(2024, 6, 2, 2, 0)) == date(2024, 6, 1)


def test_invalid_agent_is_excluded_others_still_load():
    registry = AgentScheduleRegistry.from_entries(
        [
            NY,
            {"agent_id": "broken", "local_drop_time": "09:00", "practice_start_date": "2024-01-01"},
            {"agent_id": "badzone", "timezone": "Mars/Olympus", "local_drop_time": "09:00", "practice_start_date": "2024-01-01"},
            {"agent_id": "badtime", "timezone": "UTC", "local_drop_time": "25:00", "practice_start_date": "2024-01-01"},
        ]
    )
    assert registry.agent_ids() == ["abraham"]
    assert set(registry.invalid) == {"broken", "badzone", "badtime"}
    assert "timezone" in registry.invalid["broken"]

    with pytest.raises(AgentConfigError):
        registry.get("broken")
    with pytest.raises(NotFoundError):
        registry.get("unknown")


def test_parse_agent_config_reports_missing_fields():
    with pytest.raises(AgentConfigError) as exc:
        parse_agent_config({"agent_id": "x"})
    assert "timezone" in exc.value.message
    assert "local_drop_time" in exc.value.message
    assert exc.value.agent_id == "x"


def test_parse_agent_config_defaults():
    config = parse_agent_config(NY)
    assert config.cadence == "daily"
    assert config.drop_time == time(9, 0)
    assert config.subscribers == []


def test_from_file_accepts_wrapped_and_bare_lists(tmp_path):
    wrapped = tmp_path / "agents.json"
    wrapped.write_text(json.dumps({"agents": [NY]}), encoding="utf-8")
    bare = tmp_path / "bare.json"
    bare.write_text(json.dumps([NY]), encoding="utf-8")

    assert AgentScheduleRegistry.from_file(wrapped).agent_ids() == ["abraham"]
    assert AgentScheduleRegistry.from_file(bare).agent_ids() == ["abraham"]
