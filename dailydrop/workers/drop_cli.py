"""
Daily drop operator CLI.

Usage:
    dailydrop check
    dailydrop generate <agent_id>
    dailydrop emergency-restore <agent_id> <streak_value> [--hours N]
    dailydrop init
    dailydrop run

Exit status is 0 on success and 1 when an agent is left unresolved or the
operator asked for something invalid.
"""
import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from dailydrop.core.admin_auth import cli_actor
from dailydrop.core.errors import AppError, FallbackExhaustedError, NotFoundError
from dailydrop.core.logging import configure_logging
from dailydrop.features.drops.service import DailyDropService, get_drop_service
from dailydrop.models.drop import DropTrigger
from dailydrop.models.streak import StreakStatus

logger = logging.getLogger("dailydrop.cli")


def _format_status(status: StreakStatus) -> str:
    marker = "ok" if status.streak_intact else "BROKEN"
    if status.streak_intact and status.needs_protection:
        marker = "AT RISK"
    line = (
        f"{status.agent_id}: streak={status.current_streak} longest={status.longest_streak} "
        f"total={status.total_drops} last_drop={status.last_drop_date or '-'} "
        f"dropped_today={'yes' if status.dropped_today else 'no'} days_until_break={status.days_until_break} [{marker}]"
    )
    if status.protection_active and status.protection_expires_at:
        line += f" protected_until={status.protection_expires_at.isoformat()}"
    if not status.practice_started:
        line += " (practice not started)"
    return line


async def _check(service: DailyDropService) -> int:
    failures = 0
    for agent_id, result in await service.check_all():
        if isinstance(result, NotFoundError):
            failures += 1
            print(f"{agent_id}: NOT INITIALIZED (run `dailydrop init`)")
        elif isinstance(result, Exception):
            failures += 1
            print(f"{agent_id}: ERROR {result}")
        else:
            print(_format_status(result))
    for agent_id, reason in service.registry.invalid.items():
        failures += 1
        print(f"{agent_id}: INVALID CONFIG {reason}")
    if not len(service.registry) and not service.registry.invalid:
        print("[dailydrop] no agents configured")
    return 1 if failures else 0


async def _generate(service: DailyDropService, agent_id: str) -> int:
    await service.initialize_agents()
    try:
        result = await service.run_cycle(agent_id, DropTrigger.MANUAL)
    except FallbackExhaustedError as exc:
        print(f"[dailydrop] {agent_id}: generation failed, protection applied: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await service.drain_notifications(timeout=30.0)

    detail = f" drop_id={result.drop_id} strategy={result.strategy}" if result.drop_id else ""
    print(f"[dailydrop] {agent_id}: {result.status.value}{detail}")
    if result.streak:
        print(_format_status(result.streak))
    return 0 if result.resolved else 1


async def _emergency_restore(service: DailyDropService, agent_id: str, streak_value: int, hours: Optional[float]) -> int:
    await service.initialize_agents()
    actor = cli_actor()
    record = await service.emergency_restore(agent_id, streak_value, actor=actor.actor_id, hours=hours)
    print(
        f"[dailydrop] {agent_id}: streak restored to {record.current_streak}, "
        f"protected until {record.protection_expires_at.isoformat()}"
    )
    return 0


async def _init(service: DailyDropService) -> int:
    records = await service.initialize_agents()
    print(f"[dailydrop] initialized {len(records)} agents")
    for agent_id, reason in service.registry.invalid.items():
        print(f"{agent_id}: INVALID CONFIG {reason}")
    return 0


async def _run(service: DailyDropService) -> int:
    from dailydrop.core.config import settings
    from dailydrop.workers.scheduler import DropScheduler

    scheduler = DropScheduler(
        service,
        hourly_interval=settings.HOURLY_SWEEP_SECONDS,
        end_of_day_hour=settings.END_OF_DAY_UTC_HOUR,
        restart_delay=settings.SUPERVISOR_RESTART_SECONDS,
    )
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.request_stop)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass
    print("[dailydrop] scheduler running. Press Ctrl+C to stop.")
    await scheduler.run_forever()
    print("[dailydrop] scheduler stopped")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dailydrop", description="Daily drop scheduler and streak tools")
    parser.add_argument("--agents", help="Path to the agents JSON file (overrides DAILYDROP_AGENTS_FILE)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("check", help="Report streak status for every agent (no changes)")

    generate = sub.add_parser("generate", help="Run one drop cycle for an agent now")
    generate.add_argument("agent_id")

    restore = sub.add_parser("emergency-restore", help="Force a streak value and open a protection window")
    restore.add_argument("agent_id")
    restore.add_argument("streak_value", type=int)
    restore.add_argument("--hours", type=float, default=None, help="Protection window length (default DAILYDROP_PROTECTION_HOURS)")

    sub.add_parser("init", help="Create streak records for configured agents")
    sub.add_parser("run", help="Start the scheduler")
    return parser


async def _dispatch(args: argparse.Namespace, service: DailyDropService) -> int:
    if args.command == "check":
        return await _check(service)
    if args.command == "generate":
        return await _generate(service, args.agent_id)
    if args.command == "emergency-restore":
        return await _emergency_restore(service, args.agent_id, args.streak_value, args.hours)
    if args.command == "init":
        return await _init(service)
    if args.command == "run":
        return await _run(service)
    raise AssertionError(f"unhandled command {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    from dailydrop.core.config import settings, validate_config

    configure_logging(settings.ENV)
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        validate_config()
    except RuntimeError as exc:
        print(f"[dailydrop] configuration error: {exc}", file=sys.stderr)
        return 1

    try:
        if args.agents:
            from dailydrop.features.drops.service import build_drop_service, load_registry

            service = build_drop_service(registry=load_registry(args.agents))
        else:
            service = get_drop_service()
    except (OSError, ValueError) as exc:
        print(f"[dailydrop] could not load agents: {exc}", file=sys.stderr)
        return 1

    try:
        return asyncio.run(_dispatch(args, service))
    except AppError as exc:
        print(f"[dailydrop] error ({exc.code}): {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
