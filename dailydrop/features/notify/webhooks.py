"""Webhook signing and best-effort delivery with retries."""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence

import httpx

logger = logging.getLogger("dailydrop.notify.webhooks")

WEBHOOK_TIMEOUT_SECONDS = 10.0


def canonical_json_bytes(payload: Dict) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode()


def sign_webhook(secret: str, timestamp: int, event_id: str, body_bytes: bytes) -> str:
    """Sign webhook payload using HMAC-SHA256 over timestamp + event_id + raw body."""
    signed_content = f"{timestamp}.{event_id}.".encode() + body_bytes
    digest = hmac.new(secret.encode(), signed_content, hashlib.sha256).hexdigest()
    return f"t={timestamp},e={event_id},v1={digest}"


def verify_webhook(
    secret: str,
    signature_header: str,
    timestamp: int,
    event_id: str,
    body_bytes: bytes,
    tolerance_seconds: int = 300,
    now: Optional[datetime] = None,
) -> bool:
    """Verify webhook signature and replay window (subscriber-side helper)."""
    current = int((now or datetime.now(timezone.utc)).timestamp())
    if abs(current - timestamp) > tolerance_seconds:
        return False

    provided = _v1_part(signature_header)
    expected = _v1_part(sign_webhook(secret, timestamp, event_id, body_bytes))
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided, expected)


def _v1_part(header: str) -> Optional[str]:
    for part in header.split(','):
        if part.strip().startswith('v1='):
            return part.strip().split('=', 1)[1]
    return None


async def deliver_webhook(
    url: str,
    payload: Dict,
    *,
    event_id: str,
    event_type: str,
    secret: Optional[str] = None,
    max_attempts: int = 3,
    backoff_seconds: Sequence[float] = (1.0, 5.0, 30.0),
    timeout: float = WEBHOOK_TIMEOUT_SECONDS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """POST a payload until a 2xx or attempts run out. Never raises on HTTP errors."""
    body = canonical_json_bytes(payload)
    for attempt in range(1, max_attempts + 1):
        timestamp = int(datetime.now(timezone.utc).timestamp())
        headers = {
            "Content-Type": "application/json",
            "X-DailyDrop-Event": event_type,
            "X-DailyDrop-Event-Id": event_id,
            "X-DailyDrop-Timestamp": str(timestamp),
        }
        if secret:
            headers["X-DailyDrop-Signature"] = sign_webhook(secret, timestamp, event_id, body)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                response = await client.post(url, content=body, headers=headers)
            if 200 <= response.status_code < 300:
                return True
            error = f"HTTP {response.status_code}"
        except httpx.HTTPError as exc:
            error = f"{type(exc).__name__}: {exc}"

        logger.warning(
            "[webhooks] delivery attempt failed",
            extra={"url": url, "event_id": event_id, "attempt": attempt, "max_attempts": max_attempts, "error": error},
        )
        if attempt < max_attempts and backoff_seconds:
            delay = backoff_seconds[min(attempt - 1, len(backoff_seconds) - 1)]
            await asyncio.sleep(delay)

    logger.error("[webhooks] delivery abandoned", extra={"url": url, "event_id": event_id, "attempts": max_attempts})
    return False
