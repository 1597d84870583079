"""Drop scheduler.

Three triggers drive DailyDropService cycles:
- local fire: one supervised task per agent, waking at the agent's local drop time
- hourly sweep: catches agents whose local fire was missed (restart, late wake)
- end-of-day sweep: at a fixed UTC hour, forces the chain for every agent still
  missing today's drop

Each agent task is restarted on its own if it crashes. Shutdown lets running
cycles finish (bounded by the cycle timeout), cancels pending timers, and
writes nothing.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from dailydrop.core.errors import FallbackExhaustedError
from dailydrop.features.drops.service import CycleResult, CycleStatus, DailyDropService
from dailydrop.models.drop import DropTrigger

logger = logging.getLogger("dailydrop.scheduler")


def seconds_until_next_interval(now: datetime, interval_seconds: int) -> float:
    """Seconds until the next wall-clock multiple of ``interval_seconds`` (UTC epoch aligned)."""
    epoch = now.timestamp()
    remainder = epoch % interval_seconds
    return interval_seconds - remainder


def next_utc_hour(now: datetime, hour: int) -> datetime:
    """Next instant strictly after ``now`` at HH:00 UTC."""
    now = now.astimezone(timezone.utc)
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class DropScheduler:
    def __init__(
        self,
        service: DailyDropService,
        *,
        hourly_interval: int = 3600,
        end_of_day_hour: int = 23,
        restart_delay: float = 30.0,
        run_startup_sweep: bool = True,
    ):
        self.service = service
        self.hourly_interval = hourly_interval
        self.end_of_day_hour = end_of_day_hour
        self.restart_delay = restart_delay
        self.run_startup_sweep = run_startup_sweep
        self._stopping: Optional[asyncio.Event] = None
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks) and self._stopping is not None and not self._stopping.is_set()

    @property
    def task_names(self) -> List[str]:
        return sorted(self._tasks)

    def _now(self) -> datetime:
        return self.service.clock()

    # Lifecycle ---------------------------------------------------------
    async def start(self) -> None:
        if self._tasks:
            raise RuntimeError("scheduler already started")
        self._stopping = asyncio.Event()
        await self.service.initialize_agents()

        registry = self.service.registry
        for agent_id in registry.agent_ids():
            self._spawn(f"agent:{agent_id}", lambda agent_id=agent_id: self._agent_loop(agent_id))
        self._spawn("sweep:hourly", self._hourly_loop)
        self._spawn("sweep:end_of_day", self._end_of_day_loop)
        if self.run_startup_sweep:
            self._spawn("sweep:startup", self.run_hourly_sweep)

        for agent_id, reason in registry.invalid.items():
            logger.error("[scheduler] agent not scheduled: invalid configuration", extra={"agent_id": agent_id, "reason": reason})
        logger.info(
            "[scheduler] started",
            extra={
                "agents": len(registry),
                "hourly_interval_s": self.hourly_interval,
                "end_of_day_utc_hour": self.end_of_day_hour,
            },
        )

    def request_stop(self) -> None:
        if self._stopping is not None:
            self._stopping.set()

    async def stop(self, grace: Optional[float] = None) -> None:
        """Stop timers, let in-flight cycles finish within ``grace``, cancel the rest."""
        self.request_stop()
        tasks = list(self._tasks.values())
        if tasks:
            wait_for = grace if grace is not None else self.service.cycle_timeout + 5
            _, pending = await asyncio.wait(tasks, timeout=wait_for)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("[scheduler] cancelled tasks at shutdown", extra={"count": len(pending)})
        self._tasks.clear()
        await self.service.drain_notifications(timeout=5.0)
        logger.info("[scheduler] stopped")

    async def run_forever(self) -> None:
        await self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop()

    # Sweeps ------------------------------------------------------------
    async def run_hourly_sweep(self, now: Optional[datetime] = None) -> List[CycleResult]:
        agent_ids = self.service.registry.agent_ids()
        results = await asyncio.gather(
            *(self._guarded_cycle(a, DropTrigger.HOURLY_SWEEP, now=now, require_due=True) for a in agent_ids)
        )
        dropped = [r.agent_id for r in results if r.status == CycleStatus.DROPPED]
        if dropped:
            logger.warning("[scheduler] hourly sweep produced missed drops", extra={"agents": dropped})
        return list(results)

    async def run_end_of_day_sweep(self, now: Optional[datetime] = None) -> List[CycleResult]:
        at = now or self._now()
        stragglers = []
        for agent_id in self.service.registry.agent_ids():
            try:
                if await self.service.needs_drop(agent_id, at):
                    stragglers.append(agent_id)
            except Exception:
                logger.exception("[scheduler] end-of-day check failed", extra={"agent_id": agent_id})

        if not stragglers:
            logger.info("[scheduler] end-of-day check: all agents have dropped today")
            return []

        logger.warning("[scheduler] end-of-day check: agents still needing drops", extra={"agents": stragglers})
        results = await asyncio.gather(
            *(self._guarded_cycle(a, DropTrigger.END_OF_DAY, now=now) for a in stragglers)
        )
        return list(results)

    # Loops -------------------------------------------------------------
    async def _agent_loop(self, agent_id: str) -> None:
        registry = self.service.registry
        while True:
            now = self._now()
            fire_at = registry.next_fire(agent_id, now)
            logger.debug("[scheduler] next local fire", extra={"agent_id": agent_id, "fire_at": fire_at.isoformat()})
            if await self._wait((fire_at - now).total_seconds()):
                return
            await self._guarded_cycle(agent_id, DropTrigger.LOCAL_FIRE)

    async def _hourly_loop(self) -> None:
        while True:
            if await self._wait(seconds_until_next_interval(self._now(), self.hourly_interval)):
                return
            await self.run_hourly_sweep()

    async def _end_of_day_loop(self) -> None:
        while True:
            now = self._now()
            if await self._wait((next_utc_hour(now, self.end_of_day_hour) - now).total_seconds()):
                return
            await self.run_end_of_day_sweep()

    # Helpers -----------------------------------------------------------
    async def _guarded_cycle(
        self,
        agent_id: str,
        trigger: DropTrigger,
        *,
        now: Optional[datetime] = None,
        require_due: bool = False,
    ) -> CycleResult:
        """Run one cycle; failures are logged and reported, never propagated to other agents."""
        try:
            return await self.service.run_cycle(agent_id, trigger, now=now, require_due=require_due)
        except FallbackExhaustedError as exc:
            logger.error(
                "[scheduler] generation failed with no fallback left; protection applied",
                exc_info=True,
                extra={"agent_id": agent_id, "trigger": trigger.value},
            )
            return CycleResult(agent_id, trigger, CycleStatus.FAILED, error=exc.message)
        except Exception as exc:
            logger.exception("[scheduler] cycle crashed", extra={"agent_id": agent_id, "trigger": trigger.value})
            return CycleResult(agent_id, trigger, CycleStatus.FAILED, error=f"{type(exc).__name__}: {exc}")

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if shutdown was requested meanwhile."""
        if self._stopping.is_set():
            return True
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=max(0.0, seconds))
            return True
        except asyncio.TimeoutError:
            return False

    def _spawn(self, name: str, factory: Callable[[], Awaitable[None]]) -> None:
        self._tasks[name] = asyncio.create_task(self._supervise(name, factory), name=name)

    async def _supervise(self, name: str, factory: Callable[[], Awaitable[None]]) -> None:
        while True:
            try:
                await factory()
                return
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[scheduler] task crashed; restarting", extra={"task": name, "restart_in_s": self.restart_delay})
                if await self._wait(self.restart_delay):
                    return
