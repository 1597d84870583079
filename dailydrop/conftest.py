# dailydrop/conftest.py
import logging
from datetime import datetime, timedelta, timezone

import pytest

from dailydrop.core import config as config_module
from dailydrop.features.audit.service import clear_memory_events
from dailydrop.features.drops.log import InMemoryDropLog
from dailydrop.features.drops.service import DailyDropService, set_drop_service
from dailydrop.features.generation.fallback import FallbackChainExecutor
from dailydrop.features.generation.strategies import PlaceholderFactory, StrategyDispatcher
from dailydrop.features.notify.service import EmergencyNotifier
from dailydrop.features.schedule.registry import AgentScheduleRegistry
from dailydrop.features.streaks.store import InMemoryStreakStore

# 2024-03-15 18:00 UTC: past 09:00 in New York (EDT) and 12:00 in Paris (CET)
DEFAULT_NOW = datetime(2024, 3, 15, 18, 0, tzinfo=timezone.utc)

DEFAULT_AGENTS = [
    {
        "agent_id": "abraham",
        "timezone": "America/New_York",
        "local_drop_time": "09:00",
        "practice_start_date": "2024-01-01",
        "practice_name": "Daily Covenant",
    },
    {
        "agent_id": "solienne",
        "timezone": "Europe/Paris",
        "local_drop_time": "12:00",
        "practice_start_date": "2024-01-01",
    },
]


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = DEFAULT_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakePipeline:
    """Generation pipeline double.

    ``responses`` maps a StrategyName to an artifact id, None, an exception
    instance (raised), or an async callable taking the agent id.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    async def generate(self, agent_id, strategy):
        self.calls.append((agent_id, strategy))
        response = self.responses.get(strategy)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return await response(agent_id)
        return response


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """No database, audit buffered in memory, no process-wide service leaking between tests."""
    monkeypatch.delenv("DAILYDROP_DATABASE_URL", raising=False)
    monkeypatch.delenv("DAILYDROP_TEST_DATABASE_URL", raising=False)
    monkeypatch.setattr(config_module.settings, "DATABASE_URL", None)
    monkeypatch.setattr(config_module.settings, "TEST_DATABASE_URL", None)
    monkeypatch.setattr(config_module.settings, "AUDIT_ENABLED", True)
    clear_memory_events()
    set_drop_service(None)
    app_logger = logging.getLogger("dailydrop")
    handlers, propagate = list(app_logger.handlers), app_logger.propagate
    yield
    # CLI and app imports reconfigure logging onto the captured stdout
    app_logger.handlers, app_logger.propagate = handlers, propagate
    set_drop_service(None)
    clear_memory_events()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def pipeline():
    return FakePipeline()


@pytest.fixture
def emergency():
    return EmergencyNotifier()


@pytest.fixture
def make_service(clock, pipeline, emergency):
    """Build a DailyDropService over in-memory stores and the fake pipeline."""

    def _make(
        entries=None,
        *,
        store=None,
        drop_log=None,
        notifier=None,
        placeholder_enabled=True,
        strategy_timeout=5.0,
        cycle_timeout=30.0,
    ):
        registry = AgentScheduleRegistry.from_entries(DEFAULT_AGENTS if entries is None else entries)
        dispatcher = StrategyDispatcher(
            pipeline,
            PlaceholderFactory(enabled=placeholder_enabled),
        )
        return DailyDropService(
            store=store or InMemoryStreakStore(),
            drop_log=drop_log or InMemoryDropLog(),
            registry=registry,
            executor=FallbackChainExecutor(dispatcher, strategy_timeout=strategy_timeout),
            notifier=notifier,
            emergency=emergency,
            clock=clock,
            cycle_timeout=cycle_timeout,
        )

    return _make


@pytest.fixture
def sqlite_engine():
    """Fresh in-memory SQLite database with all tables created."""
    from dailydrop.core.database import build_engine, create_all_tables, drop_all_tables

    engine = build_engine("sqlite://")
    create_all_tables(engine)
    yield engine
    drop_all_tables(engine)
    engine.dispose()
