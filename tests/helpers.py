"""Test doubles shared across the hookrelay test suite."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from hookrelay.models import DeliveryRecord, Event, Webhook

START = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Controllable clock returning aware UTC datetimes."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        """Unix time, for components that take a float clock."""
        return self.now.timestamp()

    def advance(self, seconds: float = 0, ms: int = 0) -> datetime:
        self.now += timedelta(seconds=seconds, milliseconds=ms)
        return self.now


class ScriptedEndpoint:
    """Webhook receiver answering from a script of statuses or exceptions.

    The last entry of the script repeats once the others are used up.
    Every request received is recorded.
    """

    def __init__(self, *script: int | type[Exception], body: str = "ok") -> None:
        self.script: list[int | type[Exception]] = list(script) or [200]
        self.body = body
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, type) and issubclass(step, Exception):
            raise step("scripted failure", request=request)  # type: ignore[call-arg]
        return httpx.Response(step, text=self.body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport)


def make_webhook(**overrides: Any) -> Webhook:
    """Build a webhook with sensible defaults."""
    fields: dict[str, Any] = {
        "user_id": "user_1",
        "url": "https://example.com/hooks",
        "events": ["user.*"],
        "secret": "whsec_test_secret",
        "retry_attempts": 3,
    }
    fields.update(overrides)
    return Webhook(**fields)


def make_event(**overrides: Any) -> Event:
    """Build an event with sensible defaults."""
    fields: dict[str, Any] = {
        "id": "evt_1",
        "type": "user.created",
        "payload": {"user_id": "u_1", "email": "a@example.com"},
        "timestamp": START,
    }
    fields.update(overrides)
    return Event(**fields)


def make_record(webhook: Webhook, **overrides: Any) -> DeliveryRecord:
    """Build a PENDING delivery record for a webhook, due at START."""
    fields: dict[str, Any] = {
        "webhook_id": webhook.id,
        "event_id": "evt_1",
        "event_type": "user.created",
        "event_timestamp": START,
        "payload": '{"eventId":"evt_1"}',
        "max_attempts": webhook.retry_attempts,
        "next_retry_at": START,
        "created_at": START,
    }
    fields.update(overrides)
    return DeliveryRecord(**fields)
