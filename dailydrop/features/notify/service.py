"""
Drop notifications.

SubscriberNotifier fans a successful drop out to the agent's webhook
subscriptions; EmergencyNotifier raises the alarm when every generation
strategy failed. Both are best effort: they log failures and never raise
into the scheduling path.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Optional, Sequence

import httpx

from dailydrop.features.notify.webhooks import deliver_webhook
from dailydrop.models.schedule import WebhookSubscription

logger = logging.getLogger("dailydrop.notify")

SubscriptionLookup = Callable[[str], Sequence[WebhookSubscription]]


class SubscriberNotifier:
    def __init__(
        self,
        subscriptions: SubscriptionLookup,
        *,
        default_secret: Optional[str] = None,
        max_attempts: int = 3,
        backoff_seconds: Sequence[float] = (1.0, 5.0, 30.0),
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._subscriptions = subscriptions
        self._default_secret = default_secret
        self._max_attempts = max_attempts
        self._backoff = tuple(backoff_seconds)
        self._timeout = timeout
        self._transport = transport

    async def notify(self, agent_id: str, drop_id: str, *, is_emergency: bool = False) -> int:
        """Deliver drop.created to every active subscription; returns deliveries that landed."""
        try:
            subscriptions = [s for s in self._subscriptions(agent_id) if s.active]
        except Exception:
            logger.exception("[notify] subscription lookup failed", extra={"agent_id": agent_id})
            return 0
        if not subscriptions:
            return 0

        event_id = str(uuid.uuid4())
        payload = {
            "type": "drop.created",
            "event_id": event_id,
            "agent_id": agent_id,
            "drop_id": drop_id,
            "is_emergency": is_emergency,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.info("[notify] notifying subscribers", extra={"agent_id": agent_id, "drop_id": drop_id, "subscribers": len(subscriptions)})

        results = await asyncio.gather(
            *(
                deliver_webhook(
                    sub.url,
                    payload,
                    event_id=event_id,
                    event_type="drop.created",
                    secret=sub.secret or self._default_secret,
                    max_attempts=self._max_attempts,
                    backoff_seconds=self._backoff,
                    timeout=self._timeout,
                    transport=self._transport,
                )
                for sub in subscriptions
            ),
            return_exceptions=True,
        )
        delivered = 0
        for sub, result in zip(subscriptions, results):
            if isinstance(result, BaseException):
                logger.error(
                    "[notify] delivery crashed",
                    exc_info=result,
                    extra={"agent_id": agent_id, "url": sub.url},
                )
            elif result:
                delivered += 1
        return delivered


class EmergencyNotifier:
    """Loud signal for cycles that could not produce any drop."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        *,
        secret: Optional[str] = None,
        max_attempts: int = 3,
        backoff_seconds: Sequence[float] = (1.0, 5.0, 30.0),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._webhook_url = webhook_url
        self._secret = secret
        self._max_attempts = max_attempts
        self._backoff = tuple(backoff_seconds)
        self._transport = transport
        self.signals: Deque[dict] = deque(maxlen=100)

    @property
    def webhook_configured(self) -> bool:
        return bool(self._webhook_url)

    def raise_signal(self, agent_id: str, reason: str, *, protection_expires_at: Optional[datetime] = None) -> dict:
        """Record and log the alarm immediately; delivery is a separate step."""
        event = {
            "type": "streak.emergency",
            "event_id": str(uuid.uuid4()),
            "agent_id": agent_id,
            "reason": reason,
            "protection_expires_at": protection_expires_at.isoformat() if protection_expires_at else None,
            "raised_at": datetime.now(timezone.utc).isoformat(),
        }
        self.signals.append(event)
        logger.error("[notify] EMERGENCY: %s", reason, extra={"agent_id": agent_id, "event_type": "streak.emergency"})
        return event

    async def signal(self, agent_id: str, reason: str, *, protection_expires_at: Optional[datetime] = None) -> bool:
        return await self.deliver(self.raise_signal(agent_id, reason, protection_expires_at=protection_expires_at))

    async def deliver(self, event: dict) -> bool:
        """Post a raised signal to the emergency webhook, if one is configured. Never raises."""
        if not self._webhook_url:
            return False
        agent_id = event["agent_id"]
        try:
            return await deliver_webhook(
                self._webhook_url,
                event,
                event_id=event["event_id"],
                event_type="streak.emergency",
                secret=self._secret,
                max_attempts=self._max_attempts,
                backoff_seconds=self._backoff,
                transport=self._transport,
            )
        except Exception:
            logger.exception("[notify] emergency webhook crashed", extra={"agent_id": agent_id})
            return False
