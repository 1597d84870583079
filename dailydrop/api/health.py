"""Liveness and readiness endpoints."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from dailydrop.core.database import check_connection, get_database_url, get_engine
from dailydrop.features.drops.service import get_drop_service

logger = logging.getLogger("dailydrop")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["agent_streaks", "drops", "streak_audit"]


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness: agents loaded and, when a database is configured, reachable with tables present."""
    service = get_drop_service()
    body = {
        "status": "ok",
        "agents": len(service.registry),
        "invalid_agents": sorted(service.registry.invalid),
        "storage": "memory",
    }
    if not get_database_url():
        return body

    body["storage"] = "sql"
    if not check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={**body, "status": "error", "detail": "database unreachable"})

    inspector = inspect(get_engine())
    missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning("[readyz] %s", detail)
        return JSONResponse(status_code=503, content={**body, "status": "error", "detail": detail})
    return body
