"""
Daily drop cycle.

One cycle for one agent: evaluate the streak, run the fallback chain if
today's drop is missing, log the drop, commit it to the streak record, and
notify subscribers. Cycles for the same agent are serialized by a per-agent
lock and bounded by an overall timeout; cycles for different agents never
share a lock.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from dailydrop.core.errors import FallbackExhaustedError, StoreConflictError, StreakIntegrityError, ValidationError
from dailydrop.core.logging import bind_agent, log_event
from dailydrop.features.audit.service import record_audit_event
from dailydrop.features.drops.log import DropLog
from dailydrop.features.generation.fallback import FallbackChainExecutor
from dailydrop.features.notify.service import EmergencyNotifier, SubscriberNotifier
from dailydrop.features.schedule.registry import AgentScheduleRegistry
from dailydrop.features.streaks.engine import StreakIntegrityEngine, local_day, streak_engine, utc_now
from dailydrop.features.streaks.store import StreakStore
from dailydrop.models.drop import DropRecord, DropTrigger, practice_day_for
from dailydrop.models.streak import AgentStreakRecord, StreakStatus

logger = logging.getLogger("dailydrop.drops")

COMMIT_ATTEMPTS = 2  # first write plus one re-read retry


class CycleStatus(str, Enum):
    DROPPED = "dropped"
    ALREADY_DROPPED = "already_dropped"
    NOT_STARTED = "not_started"
    NOT_DUE = "not_due"
    PROTECTED = "protected"
    CONFLICT = "conflict"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


UNRESOLVED_STATUSES = {CycleStatus.PROTECTED, CycleStatus.CONFLICT, CycleStatus.TIMED_OUT, CycleStatus.FAILED}


@dataclass(frozen=True)
class CycleResult:
    agent_id: str
    trigger: DropTrigger
    status: CycleStatus
    drop_id: Optional[str] = None
    strategy: Optional[str] = None
    is_emergency: bool = False
    streak: Optional[StreakStatus] = None
    error: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.status not in UNRESOLVED_STATUSES

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "trigger": self.trigger.value,
            "status": self.status.value,
            "drop_id": self.drop_id,
            "strategy": self.strategy,
            "is_emergency": self.is_emergency,
            "streak": self.streak.to_dict() if self.streak else None,
            "error": self.error,
        }


class DailyDropService:
    def __init__(
        self,
        *,
        store: StreakStore,
        drop_log: DropLog,
        registry: AgentScheduleRegistry,
        executor: FallbackChainExecutor,
        engine: StreakIntegrityEngine = streak_engine,
        notifier: Optional[SubscriberNotifier] = None,
        emergency: Optional[EmergencyNotifier] = None,
        clock: Callable[[], datetime] = utc_now,
        cycle_timeout: float = 900.0,
    ):
        self.store = store
        self.drop_log = drop_log
        self.registry = registry
        self.executor = executor
        self.engine = engine
        self.notifier = notifier
        self.emergency = emergency or EmergencyNotifier()
        self.clock = clock
        self.cycle_timeout = cycle_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._background: Set[asyncio.Task] = set()

    def lock_for(self, agent_id: str) -> asyncio.Lock:
        lock = self._locks.get(agent_id)
        if lock is None:
            lock = self._locks[agent_id] = asyncio.Lock()
        return lock

    # Setup -------------------------------------------------------------
    async def initialize_agents(self) -> List[AgentStreakRecord]:
        """Create streak records for registered agents that lack one. Existing records are untouched."""
        records = []
        known = set(await asyncio.to_thread(self.store.list_agent_ids))
        for config in self.registry.configs():
            record = await asyncio.to_thread(
                self.store.initialize,
                config.agent_id,
                config.practice_start_date,
                config.cadence,
                config.practice_name,
            )
            if config.agent_id not in known:
                await asyncio.to_thread(
                    record_audit_event,
                    action="streak.initialize",
                    agent_id=config.agent_id,
                    metadata={"practice_start_date": config.practice_start_date.isoformat(), "cadence": config.cadence},
                )
            records.append(record)
        return records

    # Reads -------------------------------------------------------------
    async def status(self, agent_id: str, now: Optional[datetime] = None) -> StreakStatus:
        tz = self.registry.get(agent_id).tz
        record = await self._load(agent_id)
        return self.engine.evaluate(record, now or self.clock(), tz)

    async def check_all(self, now: Optional[datetime] = None) -> List[Tuple[str, Union[StreakStatus, Exception]]]:
        """Evaluate every registered agent without mutating anything."""
        at = now or self.clock()
        results: List[Tuple[str, Union[StreakStatus, Exception]]] = []
        for agent_id in self.registry.agent_ids():
            try:
                results.append((agent_id, await self.status(agent_id, at)))
            except Exception as exc:
                logger.warning("[drops] status check failed", extra={"agent_id": agent_id, "error": f"{type(exc).__name__}: {exc}"})
                results.append((agent_id, exc))
        return results

    async def needs_drop(self, agent_id: str, now: Optional[datetime] = None) -> bool:
        """Started, and no drop recorded for the agent's local today."""
        status = await self.status(agent_id, now)
        return status.practice_started and not status.dropped_today

    # The cycle ---------------------------------------------------------
    async def run_cycle(
        self,
        agent_id: str,
        trigger: DropTrigger,
        *,
        now: Optional[datetime] = None,
        require_due: bool = False,
    ) -> CycleResult:
        """Serialized, time-bounded evaluate -> generate -> commit for one agent.

        Raises FallbackExhaustedError (after protection is applied) when the
        terminal strategy errors.
        """
        with bind_agent(agent_id):
            async with self.lock_for(agent_id):
                try:
                    return await asyncio.wait_for(
                        self._cycle(agent_id, trigger, now, require_due),
                        timeout=self.cycle_timeout,
                    )
                except asyncio.TimeoutError:
                    logger.error(
                        "[drops] cycle timed out",
                        extra={"agent_id": agent_id, "trigger": trigger.value, "timeout_s": self.cycle_timeout},
                    )
                    return CycleResult(agent_id, trigger, CycleStatus.TIMED_OUT, error="cycle timed out")

    async def _cycle(self, agent_id: str, trigger: DropTrigger, now: Optional[datetime], require_due: bool) -> CycleResult:
        tz = self.registry.get(agent_id).tz
        started_at = now or self.clock()
        record = await self._load(agent_id)
        today = local_day(started_at, tz)

        if today < record.practice_start_date:
            return CycleResult(agent_id, trigger, CycleStatus.NOT_STARTED, streak=self.engine.evaluate(record, started_at, tz))
        if self.engine.has_dropped_today(record, started_at, tz):
            return CycleResult(agent_id, trigger, CycleStatus.ALREADY_DROPPED, streak=self.engine.evaluate(record, started_at, tz))
        if require_due and not self.registry.fire_passed_today(agent_id, started_at):
            return CycleResult(agent_id, trigger, CycleStatus.NOT_DUE, streak=self.engine.evaluate(record, started_at, tz))

        drop = await self._uncommitted_drop(agent_id, today)
        if drop is not None:
            # A previous cycle logged this drop but lost its commit; commit it instead of generating again
            logger.warning("[drops] committing drop logged by an earlier cycle", extra={"agent_id": agent_id, "drop_id": drop.drop_id})
        else:
            logger.info("[drops] generating daily drop", extra={"agent_id": agent_id, "trigger": trigger.value})
            try:
                outcome = await self.executor.run(agent_id)
            except FallbackExhaustedError as exc:
                await self._protect(agent_id, now, exc.message)
                raise

            if not outcome.success:
                protected = await self._protect(
                    agent_id,
                    now,
                    f"All drop generation strategies failed ({', '.join(s.value for s in outcome.exhausted_strategies)})",
                )
                return CycleResult(
                    agent_id,
                    trigger,
                    CycleStatus.PROTECTED,
                    streak=self.engine.evaluate(protected, now or self.clock(), tz) if protected else None,
                    error="fallback chain exhausted",
                )

            # Dated by the cycle start: a run crossing local midnight fills the day it was due for
            practice_day = practice_day_for(today, record.practice_start_date)
            drop = DropRecord(
                agent_id=agent_id,
                drop_id=outcome.drop_id,
                local_day=today,
                created_at=started_at,
                is_emergency=outcome.is_emergency,
                strategy=outcome.strategy.value,
                trigger=trigger.value,
                practice_day=practice_day,
                drop_number=await asyncio.to_thread(self.drop_log.count, agent_id) + 1,
                title=f"{self.registry.get(agent_id).practice_name} Day {practice_day}",
            )
            if not await asyncio.to_thread(self.drop_log.append, drop):
                logger.warning(
                    "[drops] artifact id already in the drop log; committing without a new log entry",
                    extra={"agent_id": agent_id, "drop_id": drop.drop_id, "strategy": drop.strategy},
                )

        try:
            updated = await self._mutate(
                agent_id,
                lambda rec: self.engine.commit(rec, started_at, tz, is_emergency=drop.is_emergency),
            )
        except StoreConflictError as exc:
            logger.warning("[drops] commit abandoned after repeated conflicts", extra={"agent_id": agent_id, "drop_id": drop.drop_id})
            return CycleResult(
                agent_id, trigger, CycleStatus.CONFLICT,
                drop_id=drop.drop_id, strategy=drop.strategy, is_emergency=drop.is_emergency, error=exc.message,
            )

        log_event(
            "info",
            "[drops] drop recorded",
            agent_id=agent_id,
            drop_id=drop.drop_id,
            event_type="drop.created",
            extra={
                "strategy": drop.strategy,
                "is_emergency": drop.is_emergency,
                "current_streak": updated.current_streak,
                "practice_day": drop.practice_day,
                "drop_number": drop.drop_number,
            },
        )
        self._notify_later(agent_id, drop.drop_id, drop.is_emergency)
        return CycleResult(
            agent_id,
            trigger,
            CycleStatus.DROPPED,
            drop_id=drop.drop_id,
            strategy=drop.strategy,
            is_emergency=drop.is_emergency,
            streak=self.engine.evaluate(updated, started_at, tz),
        )

    # Privileged --------------------------------------------------------
    async def emergency_restore(
        self,
        agent_id: str,
        streak_value: int,
        *,
        actor: str,
        hours: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> AgentStreakRecord:
        """Force an agent's current streak and open a protection window. Always audited."""
        if streak_value < 0:
            raise ValidationError("streak_value must be >= 0")
        if hours is not None and hours <= 0:
            raise ValidationError("hours must be positive")
        duration = timedelta(hours=hours) if hours is not None else None
        at = now or self.clock()

        async with self.lock_for(agent_id):
            before = await self._load(agent_id)
            restored = await self._mutate(
                agent_id,
                lambda rec: self.engine.emergency_restore(rec, at, streak_value, duration),
            )
        logger.warning(
            "[drops] emergency streak restore",
            extra={"agent_id": agent_id, "actor": actor, "previous_streak": before.current_streak, "streak_value": streak_value},
        )
        await asyncio.to_thread(
            record_audit_event,
            action="streak.emergency_restore",
            agent_id=agent_id,
            actor=actor,
            metadata={
                "previous_streak": before.current_streak,
                "streak_value": streak_value,
                "protection_expires_at": restored.protection_expires_at.isoformat() if restored.protection_expires_at else None,
            },
            now=at,
        )
        return restored

    # Internals ---------------------------------------------------------
    async def _load(self, agent_id: str) -> AgentStreakRecord:
        record = await asyncio.to_thread(self.store.get, agent_id)
        violations = self.engine.invariant_violations(record)
        if violations:
            raise StreakIntegrityError(
                f"Streak record for {agent_id} is malformed: {'; '.join(violations)}",
                agent_id=agent_id,
                violations=violations,
            )
        return record

    async def _uncommitted_drop(self, agent_id: str, today) -> Optional[DropRecord]:
        """Today's logged drop, if any. Only called once the record shows no drop today."""
        latest = await asyncio.to_thread(self.drop_log.list_for, agent_id, 1)
        if latest and latest[0].local_day == today:
            return latest[0]
        return None

    async def _mutate(self, agent_id: str, change: Callable[[AgentStreakRecord], AgentStreakRecord]) -> AgentStreakRecord:
        """Read, apply ``change``, versioned put; on conflict re-read and retry once."""
        for attempt in range(1, COMMIT_ATTEMPTS + 1):
            record = await self._load(agent_id)
            updated = change(record)
            if updated is record:
                return record
            if await asyncio.to_thread(self.store.put, agent_id, updated, record.version):
                return replace(updated, version=record.version + 1)
            logger.warning(
                "[drops] store conflict",
                extra={"agent_id": agent_id, "attempt": attempt, "expected_version": record.version},
            )
        raise StoreConflictError(f"Streak record for {agent_id} changed concurrently; write abandoned")

    async def _protect(self, agent_id: str, now: Optional[datetime], reason: str) -> Optional[AgentStreakRecord]:
        at = now or self.clock()
        protected: Optional[AgentStreakRecord] = None
        try:
            protected = await self._mutate(agent_id, lambda rec: self.engine.activate_protection(rec, at))
            await asyncio.to_thread(
                record_audit_event,
                action="streak.protection_activated",
                agent_id=agent_id,
                metadata={"reason": reason, "expires_at": protected.protection_expires_at.isoformat()},
                now=at,
            )
        except Exception:
            logger.exception("[drops] failed to activate protection", extra={"agent_id": agent_id})
        event = self.emergency.raise_signal(
            agent_id,
            reason,
            protection_expires_at=protected.protection_expires_at if protected else None,
        )
        if self.emergency.webhook_configured:
            # Alert delivery retries with backoff; keep it outside the agent lock and cycle timeout
            self._in_background(self.emergency.deliver(event))
        return protected

    def _in_background(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _notify_later(self, agent_id: str, drop_id: str, is_emergency: bool) -> None:
        if self.notifier is not None:
            self._in_background(self._safe_notify(agent_id, drop_id, is_emergency))

    async def _safe_notify(self, agent_id: str, drop_id: str, is_emergency: bool) -> None:
        try:
            await self.notifier.notify(agent_id, drop_id, is_emergency=is_emergency)
        except Exception:
            logger.exception("[drops] subscriber notification failed", extra={"agent_id": agent_id, "drop_id": drop_id})

    async def drain_notifications(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding subscriber and emergency deliveries; cancel whatever is left after ``timeout``."""
        pending = set(self._background)
        if not pending:
            return
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)


# ============================================================================
# Wiring
# ============================================================================

_service: Optional[DailyDropService] = None


def load_registry(path: Optional[str] = None) -> AgentScheduleRegistry:
    from pathlib import Path

    from dailydrop.core.config import settings

    agents_file = Path(path or settings.AGENTS_FILE)
    if not agents_file.exists():
        logger.warning("[drops] agents file not found; no agents registered", extra={"path": str(agents_file)})
        return AgentScheduleRegistry()
    return AgentScheduleRegistry.from_file(agents_file)


def build_drop_service(settings_obj=None, registry: Optional[AgentScheduleRegistry] = None) -> DailyDropService:
    """Assemble the service from settings: stores, pipeline, chain, notifiers."""
    from dailydrop.core.config import settings as default_settings
    from dailydrop.features.drops.log import get_drop_log
    from dailydrop.features.generation.strategies import (
        HttpGenerationPipeline,
        PlaceholderFactory,
        StrategyDispatcher,
        UnavailablePipeline,
    )
    from dailydrop.features.streaks.store import get_streak_store

    cfg = settings_obj or default_settings
    registry = registry if registry is not None else load_registry(cfg.AGENTS_FILE)

    if cfg.GENERATION_URL:
        pipeline = HttpGenerationPipeline(
            cfg.GENERATION_URL,
            api_key=cfg.GENERATION_API_KEY,
            timeout=cfg.STRATEGY_TIMEOUT_SECONDS,
        )
    else:
        logger.warning("[drops] DAILYDROP_GENERATION_URL not set; only placeholder drops can be produced")
        pipeline = UnavailablePipeline()

    dispatcher = StrategyDispatcher(pipeline, PlaceholderFactory(enabled=cfg.PLACEHOLDER_ENABLED))
    executor = FallbackChainExecutor(dispatcher, strategy_timeout=cfg.STRATEGY_TIMEOUT_SECONDS)
    backoff = cfg.notify_backoff()

    def subscriptions(agent_id: str):
        return registry.get(agent_id).subscribers if agent_id in registry else []

    return DailyDropService(
        store=get_streak_store(),
        drop_log=get_drop_log(),
        registry=registry,
        executor=executor,
        engine=StreakIntegrityEngine(protection_duration=timedelta(hours=cfg.PROTECTION_HOURS)),
        notifier=SubscriberNotifier(
            subscriptions,
            default_secret=cfg.WEBHOOK_SECRET,
            max_attempts=cfg.NOTIFY_MAX_ATTEMPTS,
            backoff_seconds=backoff,
            timeout=cfg.NOTIFY_TIMEOUT_SECONDS,
        ),
        emergency=EmergencyNotifier(
            cfg.EMERGENCY_WEBHOOK_URL,
            secret=cfg.WEBHOOK_SECRET,
            max_attempts=cfg.NOTIFY_MAX_ATTEMPTS,
            backoff_seconds=backoff,
        ),
        cycle_timeout=cfg.CYCLE_TIMEOUT_SECONDS,
    )


def get_drop_service() -> DailyDropService:
    global _service
    if _service is None:
        _service = build_drop_service()
    return _service


def set_drop_service(service: Optional[DailyDropService]) -> None:
    """Install (or clear, with None) the process-wide service. Tests use this."""
    global _service
    _service = service
