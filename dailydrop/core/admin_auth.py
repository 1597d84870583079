"""
Admin authentication for privileged streak operations.

Emergency restore rewrites a streak value, so it requires the shared
X-Admin-Key. Every admin action is audited with the actor identity
(a short hash of the key, never the key itself).
"""
import hashlib
import hmac
import os
from dataclasses import dataclass

from fastapi import Request

from dailydrop.core.config import settings
from dailydrop.core.errors import PermissionError


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "admin:<hash>" or "cli:<user>"
    auth_mechanism: str = "x_admin_key"


def get_admin_api_key() -> str | None:
    """Prefer DAILYDROP_ADMIN_KEY from the environment; fall back to settings."""
    env_key = os.getenv("DAILYDROP_ADMIN_KEY")
    if env_key:
        return env_key
    return settings.ADMIN_KEY


def require_admin(request: Request) -> AdminActor:
    """FastAPI dependency: validate X-Admin-Key or raise 403."""
    expected_key = get_admin_api_key()
    if not expected_key:
        raise PermissionError("Admin access is not configured")

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        raise PermissionError("Invalid admin key")

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin:{key_hash}")


def cli_actor() -> AdminActor:
    """Identity used when an operator runs privileged commands from a shell."""
    user = os.getenv("USER") or os.getenv("USERNAME") or "unknown"
    return AdminActor(actor_id=f"cli:{user}", auth_mechanism="cli")
