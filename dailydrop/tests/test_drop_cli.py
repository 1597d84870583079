import asyncio
import json
from datetime import date
from dataclasses import replace

import pytest

from dailydrop.features.audit.service import list_audit_events
from dailydrop.features.drops.service import set_drop_service
from dailydrop.features.generation.strategies import StrategyName
from dailydrop.workers.drop_cli import main


@pytest.fixture
def installed(make_service):
    def _install(**kwargs):
        service = make_service(**kwargs)
        set_drop_service(service)
        return service

    return _install


def test_check_prints_every_agent(installed, capsys):
    service = installed()
    asyncio.run(service.initialize_agents())
    assert main(["check"]) == 0
    out = capsys.readouterr().out
    assert "abraham: streak=0" in out
    assert "solienne: streak=0" in out


def test_check_does_not_create_records(installed, capsys):
    service = installed()
    assert main(["check"]) == 1
    assert "abraham: NOT INITIALIZED" in capsys.readouterr().out
    assert service.store.list_agent_ids() == []


def test_check_flags_invalid_configuration(installed, capsys):
    installed(entries=[{"agent_id": "broken", "timezone": "Nowhere/City", "local_drop_time": "09:00", "practice_start_date": "2024-01-01"}])
    assert main(["check"]) == 1
    assert "broken: INVALID CONFIG" in capsys.readouterr().out


def test_generate_success_exits_zero(installed, pipeline, capsys):
    pipeline.responses[StrategyName.PRIMARY] = "covenant-1"
    service = installed()
    assert main(["generate", "abraham"]) == 0
    assert "abraham: dropped drop_id=covenant-1" in capsys.readouterr().out
    assert service.store.get("abraham").current_streak == 1


def test_generate_unresolved_exits_one(installed, capsys):
    service = installed(placeholder_enabled=False)
    assert main(["generate", "abraham"]) == 1
    assert "protected" in capsys.readouterr().out
    assert service.store.get("abraham").protection_active is True


def test_generate_unknown_agent_exits_one(installed, capsys):
    installed()
    assert main(["generate", "nobody"]) == 1
    assert "not_found" in capsys.readouterr().err


def test_emergency_restore_records_cli_actor(installed, capsys):
    service = installed()
    asyncio.run(service.initialize_agents())
    record = service.store.get("solienne")
    service.store.put("solienne", replace(record, current_streak=1, longest_streak=12, last_drop_date=date(2024, 3, 14), total_drops=12), record.version)

    assert main(["emergency-restore", "solienne", "12", "--hours", "6"]) == 0

    restored = service.store.get("solienne")
    assert restored.current_streak == 12
    assert restored.protection_active is True
    event = list_audit_events(agent_id="solienne")[0]
    assert event["action"] == "streak.emergency_restore"
    assert event["actor"].startswith("cli:")
    assert "streak restored to 12" in capsys.readouterr().out


def test_emergency_restore_rejects_negative_value(installed, capsys):
    installed()
    assert main(["emergency-restore", "abraham", "-3"]) == 1
    assert "validation_error" in capsys.readouterr().err


def test_init_creates_records(installed, capsys):
    service = installed()
    assert main(["init"]) == 0
    assert service.store.list_agent_ids() == ["abraham", "solienne"]
    assert "initialized 2 agents" in capsys.readouterr().out


def test_agents_file_option_builds_service(tmp_path, capsys, monkeypatch):
    from dailydrop.core import config as config_module

    monkeypatch.setattr(config_module.settings, "GENERATION_URL", None)
    agents = tmp_path / "agents.json"
    agents.write_text(
        json.dumps({"agents": [{"agent_id": "geppetto", "timezone": "UTC", "local_drop_time": "00:00", "practice_start_date": "2024-01-01"}]}),
        encoding="utf-8",
    )

    assert main(["--agents", str(agents), "generate", "geppetto"]) == 0
    out = capsys.readouterr().out
    assert "geppetto: dropped drop_id=emergency-geppetto-" in out


def test_unreadable_agents_file_exits_one(tmp_path, capsys):
    agents = tmp_path / "agents.json"
    agents.write_text("{not json", encoding="utf-8")
    assert main(["--agents", str(agents), "check"]) == 1
    assert "could not load agents" in capsys.readouterr().err
