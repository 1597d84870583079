from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from dailydrop.core.admin_auth import AdminActor, require_admin
from dailydrop.features.audit.service import list_audit_events
from dailydrop.features.drops.service import DailyDropService, get_drop_service
from dailydrop.models.drop import DropTrigger

logger = logging.getLogger("dailydrop")

router = APIRouter(prefix="/v1/streaks", tags=["streaks"])


class EmergencyRestoreRequest(BaseModel):
    streak_value: int = Field(..., ge=0)
    hours: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=500)


def get_service() -> DailyDropService:
    return get_drop_service()


@router.get("")
async def list_streaks(service: DailyDropService = Depends(get_service)):
    """Current status for every registered agent; per-agent failures are reported, not raised."""
    streaks = []
    errors = {}
    for agent_id, result in await service.check_all():
        if isinstance(result, Exception):
            errors[agent_id] = str(result)
        else:
            streaks.append(result.to_dict())
    return {"streaks": streaks, "errors": errors, "invalid_agents": service.registry.invalid}


@router.get("/{agent_id}")
async def get_streak(
    agent_id: str,
    drops: int = Query(10, ge=0, le=100),
    service: DailyDropService = Depends(get_service),
):
    status = await service.status(agent_id)
    recent = await asyncio.to_thread(service.drop_log.list_for, agent_id, drops) if drops else []
    return {"streak": status.to_dict(), "recent_drops": [d.to_dict() for d in recent]}


@router.post("/{agent_id}/generate")
async def generate_drop(agent_id: str, service: DailyDropService = Depends(get_service)):
    """Run one cycle now. Already-dropped agents get their current status back unchanged."""
    result = await service.run_cycle(agent_id, DropTrigger.MANUAL)
    return result.to_dict()


@router.post("/{agent_id}/emergency-restore")
async def emergency_restore(
    agent_id: str,
    body: EmergencyRestoreRequest,
    actor: AdminActor = Depends(require_admin),
    service: DailyDropService = Depends(get_service),
):
    record = await service.emergency_restore(agent_id, body.streak_value, actor=actor.actor_id, hours=body.hours)
    logger.warning(
        "[streaks] emergency restore via API",
        extra={"agent_id": agent_id, "actor": actor.actor_id, "reason": body.reason},
    )
    status = await service.status(agent_id)
    return {"record": record.to_dict(), "streak": status.to_dict()}


@router.get("/{agent_id}/audit", dependencies=[Depends(require_admin)])
def streak_audit(agent_id: str, limit: int = Query(50, ge=1, le=500)):
    return {"events": list_audit_events(agent_id=agent_id, limit=limit)}
