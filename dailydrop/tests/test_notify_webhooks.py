"""Tests for webhook signing, delivery retries and drop notifications."""
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from dailydrop.features.notify.service import EmergencyNotifier, SubscriberNotifier
from dailydrop.features.notify.webhooks import (
    canonical_json_bytes,
    deliver_webhook,
    sign_webhook,
    verify_webhook,
)
from dailydrop.models.schedule import WebhookSubscription


class _Recorder:
    """MockTransport handler that replays a list of status codes."""

    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status)


def test_signature_round_trip():
    body = canonical_json_bytes({"b": 1, "a": "x"})
    assert body == b'{"a":"x","b":1}'
    timestamp = int(datetime.now(timezone.utc).timestamp())

    signature = sign_webhook("s3cret", timestamp, "evt_1", body)
    assert signature.startswith(f"t={timestamp},e=evt_1,v1=")
    assert verify_webhook("s3cret", signature, timestamp, "evt_1", body) is True
    assert verify_webhook("wrong", signature, timestamp, "evt_1", body) is False
    assert verify_webhook("s3cret", signature, timestamp, "evt_1", body + b" ") is False


def test_signature_outside_replay_window_rejected():
    body = b"{}"
    old = int((datetime.now(timezone.utc) - timedelta(minutes=10)).timestamp())
    signature = sign_webhook("s3cret", old, "evt_1", body)
    assert verify_webhook("s3cret", signature, old, "evt_1", body, tolerance_seconds=300) is False


@pytest.mark.asyncio
async def test_delivery_retries_until_success():
    recorder = _Recorder([500, 502, 200])
    delivered = await deliver_webhook(
        "https://hooks.example.com/drops",
        {"type": "drop.created"},
        event_id="evt_1",
        event_type="drop.created",
        secret="s3cret",
        max_attempts=3,
        backoff_seconds=[0, 0],
        transport=httpx.MockTransport(recorder),
    )
    assert delivered is True
    assert len(recorder.requests) == 3
    headers = recorder.requests[-1].headers
    assert headers["X-DailyDrop-Event"] == "drop.created"
    assert headers["X-DailyDrop-Event-Id"] == "evt_1"
    assert headers["X-DailyDrop-Signature"].startswith("t=")


@pytest.mark.asyncio
async def test_delivery_gives_up_after_max_attempts():
    recorder = _Recorder([500, 500, 500, 500])
    delivered = await deliver_webhook(
        "https://hooks.example.com/drops",
        {"type": "drop.created"},
        event_id="evt_2",
        event_type="drop.created",
        max_attempts=2,
        backoff_seconds=[0],
        transport=httpx.MockTransport(recorder),
    )
    assert delivered is False
    assert len(recorder.requests) == 2
    assert "X-DailyDrop-Signature" not in recorder.requests[0].headers


@pytest.mark.asyncio
async def test_delivery_survives_connection_errors():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    delivered = await deliver_webhook(
        "https://hooks.example.com/drops",
        {},
        event_id="evt_3",
        event_type="drop.created",
        max_attempts=2,
        backoff_seconds=[0],
        transport=httpx.MockTransport(refuse),
    )
    assert delivered is False


@pytest.mark.asyncio
async def test_subscriber_notifier_skips_inactive_subscriptions():
    recorder = _Recorder([])
    subscriptions = {
        "abraham": [
            WebhookSubscription(url="https://a.example.com/hook", secret="sa"),
            WebhookSubscription(url="https://b.example.com/hook", active=False),
        ]
    }
    notifier = SubscriberNotifier(
        lambda agent_id: subscriptions.get(agent_id, []),
        max_attempts=1,
        backoff_seconds=[0],
        transport=httpx.MockTransport(recorder),
    )

    delivered = await notifier.notify("abraham", "covenant-42", is_emergency=False)

    assert delivered == 1
    assert len(recorder.requests) == 1
    payload = json.loads(recorder.requests[0].content)
    assert payload["type"] == "drop.created"
    assert payload["agent_id"] == "abraham"
    assert payload["drop_id"] == "covenant-42"
    assert await notifier.notify("nobody", "x") == 0


@pytest.mark.asyncio
async def test_subscriber_lookup_failure_is_not_raised():
    def broken_lookup(agent_id):
        raise RuntimeError("registry gone")

    notifier = SubscriberNotifier(broken_lookup)
    assert await notifier.notify("abraham", "covenant-42") == 0


@pytest.mark.asyncio
async def test_emergency_signal_without_webhook_is_recorded():
    notifier = EmergencyNotifier()
    sent = await notifier.signal("solienne", "All drop generation strategies failed")
    assert sent is False
    assert notifier.signals[-1]["type"] == "streak.emergency"
    assert notifier.signals[-1]["agent_id"] == "solienne"


@pytest.mark.asyncio
async def test_emergency_signal_posts_when_configured():
    recorder = _Recorder([200])
    notifier = EmergencyNotifier(
        "https://ops.example.com/alerts",
        secret="ops",
        max_attempts=1,
        transport=httpx.MockTransport(recorder),
    )
    expires = datetime(2024, 3, 16, 18, 0, tzinfo=timezone.utc)

    sent = await notifier.signal("abraham", "placeholder failed", protection_expires_at=expires)

    assert sent is True
    body = json.loads(recorder.requests[0].content)
    assert body["reason"] == "placeholder failed"
    assert body["protection_expires_at"] == expires.isoformat()
    assert recorder.requests[0].headers["X-DailyDrop-Event"] == "streak.emergency"
