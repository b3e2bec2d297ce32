"""Tests for the delivery record lifecycle."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import pytest
from helpers import FakeClock, ScriptedEndpoint, make_event, make_record, make_webhook

from hookrelay.delivery import (
    DeliveryExecutor,
    DeliveryStateMachine,
    Dispatcher,
    InMemoryCounterStore,
    RateLimiter,
    WebhookRegistry,
)
from hookrelay.delivery.registry import SUSPENDED_REASON
from hookrelay.models import DeliveryStatus, Webhook, WebhookStatus
from hookrelay.storage import InMemoryStore


@dataclass
class Harness:
    """A state machine wired to an in-memory store and a scripted endpoint."""

    store: InMemoryStore
    clock: FakeClock
    endpoint: ScriptedEndpoint
    registry: WebhookRegistry
    dispatcher: Dispatcher
    machine: DeliveryStateMachine
    rescheduled: list[tuple[str, datetime]] = field(default_factory=list)

    async def add_webhook(self, **overrides: object) -> Webhook:
        webhook = make_webhook(**overrides)
        await self.store.create_webhook(webhook)
        self.registry.invalidate()
        return webhook

    async def publish(self, event_id: str = "evt_1") -> str:
        created = await self.dispatcher.on_event(make_event(id=event_id))
        assert len(created) == 1
        return created[0]


def build_harness(
    *script: int | type[Exception],
    clock: FakeClock | None = None,
    suspend_threshold: int = 10,
    default_limit: int = 60,
    abandon_on_gone: bool = False,
) -> Harness:
    clock = clock or FakeClock()
    store = InMemoryStore()
    endpoint = ScriptedEndpoint(*script)
    registry = WebhookRegistry(store, suspend_threshold=suspend_threshold)
    harness = Harness(
        store=store,
        clock=clock,
        endpoint=endpoint,
        registry=registry,
        dispatcher=Dispatcher(
            store, registry, retry_delay_ms=1000, retry_multiplier=2.0, clock=clock
        ),
        machine=None,  # type: ignore[arg-type]
    )
    harness.machine = DeliveryStateMachine(
        store,
        registry,
        DeliveryExecutor(endpoint.client(), clock=clock.timestamp),
        RateLimiter(InMemoryCounterStore(), default_limit=default_limit, clock=clock.timestamp),
        claim_ttl_seconds=120,
        rate_limit_deferral_ms=5000,
        abandon_on_gone=abandon_on_gone,
        on_reschedule=lambda delivery_id, due_at: harness.rescheduled.append(
            (delivery_id, due_at)
        ),
        clock=clock,
    )
    return harness


class TestRetryLifecycle:
    """Failure, retry and exhaustion."""

    @pytest.mark.asyncio
    async def test_three_failures_then_abandoned(self) -> None:
        """Three 503s should retry after 1s and 2s, then abandon the record."""
        h = build_harness(503)
        webhook = await h.add_webhook(retry_attempts=3)
        delivery_id = await h.publish()
        start = h.clock.now

        first = await h.machine.process(delivery_id, "w1")
        assert first is not None
        assert first.status == DeliveryStatus.RETRY_SCHEDULED
        assert first.attempts == 1
        assert first.next_retry_at == start + timedelta(milliseconds=1000)
        assert first.claimed_by is None
        assert h.rescheduled[-1] == (delivery_id, first.next_retry_at)

        # Not due yet
        assert await h.machine.process(delivery_id, "w1") is None

        h.clock.advance(ms=1000)
        second = await h.machine.process(delivery_id, "w1")
        assert second is not None
        assert second.status == DeliveryStatus.RETRY_SCHEDULED
        assert second.attempts == 2
        assert second.next_retry_at == h.clock.now + timedelta(milliseconds=2000)

        h.clock.advance(ms=2000)
        third = await h.machine.process(delivery_id, "w1")
        assert third is not None
        assert third.status == DeliveryStatus.ABANDONED
        assert third.attempts == 3
        assert third.error_message == "HTTP 503: Service Unavailable"
        assert third.next_retry_at is None

        attempts = await h.store.list_attempts(delivery_id)
        assert [a.attempt for a in attempts] == [1, 2, 3]
        assert not any(a.success for a in attempts)
        assert len(h.endpoint.requests) == 3

        stored = await h.store.get_webhook(webhook.id)
        assert stored is not None
        assert stored.failure_count == 3
        assert stored.consecutive_failures == 3
        assert stored.status == WebhookStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_success_on_second_attempt(self) -> None:
        """A success after a failure should deliver and reset the streak."""
        h = build_harness(503, 200)
        webhook = await h.add_webhook()
        delivery_id = await h.publish()

        await h.machine.process(delivery_id, "w1")
        h.clock.advance(ms=1000)
        record = await h.machine.process(delivery_id, "w1")

        assert record is not None
        assert record.status == DeliveryStatus.DELIVERED
        assert record.attempts == 2
        assert record.delivered_at == h.clock.now
        assert record.error_message is None
        assert record.response_status == 200

        stored = await h.store.get_webhook(webhook.id)
        assert stored is not None
        assert stored.success_count == 1
        assert stored.failure_count == 1
        assert stored.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_payload_identical_across_attempts(self) -> None:
        """Every attempt should send the same body."""
        h = build_harness(500, 500, 200)
        await h.add_webhook()
        delivery_id = await h.publish()

        await h.machine.process(delivery_id, "w1")
        h.clock.advance(ms=1000)
        await h.machine.process(delivery_id, "w1")
        h.clock.advance(ms=2000)
        await h.machine.process(delivery_id, "w1")

        bodies = {r.content for r in h.endpoint.requests}
        assert len(bodies) == 1
        assert [r.headers["X-Delivery-Attempt"] for r in h.endpoint.requests] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_terminal_record_is_left_alone(self) -> None:
        """A delivered record should never be claimed again."""
        h = build_harness(200)
        await h.add_webhook()
        delivery_id = await h.publish()
        await h.machine.process(delivery_id, "w1")

        h.clock.advance(seconds=3600)
        assert await h.machine.process(delivery_id, "w1") is None
        assert len(h.endpoint.requests) == 1

    @pytest.mark.asyncio
    async def test_unknown_delivery(self) -> None:
        """Processing a missing record should do nothing."""
        h = build_harness(200)
        assert await h.machine.process("dlv_missing", "w1") is None


class TestRateLimit:
    """Rate-limited records are deferred, not failed."""

    @pytest.mark.asyncio
    async def test_deferral_does_not_consume_attempts(self) -> None:
        """The second delivery in a full window should be pushed back untouched."""
        h = build_harness(200)
        await h.add_webhook(rate_limit=1)
        first_id = await h.publish("evt_1")
        second_id = await h.publish("evt_2")

        await h.machine.process(first_id, "w1")
        deferred = await h.machine.process(second_id, "w1")

        assert deferred is not None
        assert deferred.status == DeliveryStatus.PENDING
        assert deferred.attempts == 0
        assert deferred.next_retry_at == h.clock.now + timedelta(milliseconds=5000)
        assert deferred.claimed_by is None
        assert h.rescheduled[-1] == (second_id, deferred.next_retry_at)
        assert len(h.endpoint.requests) == 1
        assert await h.store.list_attempts(second_id) == []

    @pytest.mark.asyncio
    async def test_deferred_record_delivered_in_next_window(self) -> None:
        """A deferred record should go out once the window rolls over."""
        h = build_harness(200)
        await h.add_webhook(rate_limit=1)
        first_id = await h.publish("evt_1")
        second_id = await h.publish("evt_2")
        await h.machine.process(first_id, "w1")
        await h.machine.process(second_id, "w1")

        h.clock.advance(seconds=60)
        record = await h.machine.process(second_id, "w1")

        assert record is not None
        assert record.status == DeliveryStatus.DELIVERED
        assert record.attempts == 1


class TestClaims:
    """Concurrent workers and stale claims."""

    @pytest.mark.asyncio
    async def test_only_one_worker_wins(self) -> None:
        """Two workers racing for a record should produce one attempt."""
        h = build_harness(200)
        await h.add_webhook()
        delivery_id = await h.publish()

        results = await asyncio.gather(
            h.machine.process(delivery_id, "w1"),
            h.machine.process(delivery_id, "w2"),
        )

        assert sum(r is not None for r in results) == 1
        assert len(h.endpoint.requests) == 1
        assert len(await h.store.list_attempts(delivery_id)) == 1

    @pytest.mark.asyncio
    async def test_stale_delivering_record_is_retried(self) -> None:
        """A record left DELIVERING by a dead worker should be retried after its claim lapses."""
        h = build_harness(200)
        webhook = await h.add_webhook()
        record = make_record(
            webhook,
            status=DeliveryStatus.DELIVERING,
            attempts=1,
            next_retry_at=None,
            claimed_by="dead-worker",
            claim_expires_at=h.clock.now + timedelta(seconds=120),
        )
        await h.store.create_delivery(record)

        assert await h.machine.process(record.id, "w1") is None

        h.clock.advance(seconds=121)
        result = await h.machine.process(record.id, "w1")

        assert result is not None
        assert result.status == DeliveryStatus.DELIVERED
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_stale_record_without_attempts_left(self) -> None:
        """A reclaimed record with its budget spent should be abandoned without a request."""
        h = build_harness(200)
        webhook = await h.add_webhook(retry_attempts=2)
        record = make_record(
            webhook,
            status=DeliveryStatus.DELIVERING,
            attempts=2,
            next_retry_at=None,
            claimed_by="dead-worker",
            claim_expires_at=h.clock.now - timedelta(seconds=1),
        )
        await h.store.create_delivery(record)

        result = await h.machine.process(record.id, "w1")

        assert result is not None
        assert result.status == DeliveryStatus.ABANDONED
        assert h.endpoint.requests == []

    @pytest.mark.asyncio
    async def test_rate_limited_stale_record_becomes_retry(self) -> None:
        """A reclaimed record that hits the rate limit should wait as RETRY_SCHEDULED."""
        h = build_harness(200)
        webhook = await h.add_webhook(rate_limit=1)
        first_id = await h.publish("evt_1")
        await h.machine.process(first_id, "w1")
        record = make_record(
            webhook,
            event_id="evt_2",
            status=DeliveryStatus.DELIVERING,
            attempts=1,
            next_retry_at=None,
            claim_expires_at=h.clock.now - timedelta(seconds=1),
        )
        await h.store.create_delivery(record)

        result = await h.machine.process(record.id, "w1")

        assert result is not None
        assert result.status == DeliveryStatus.RETRY_SCHEDULED
        assert result.attempts == 1


class TestWebhookState:
    """Records of deleted, suspended or disabled webhooks."""

    @pytest.mark.asyncio
    async def test_deleted_webhook_fails_record(self) -> None:
        """A record whose webhook is gone should become FAILED."""
        h = build_harness(200)
        webhook = await h.add_webhook()
        delivery_id = await h.publish()
        await h.store.delete_webhook(webhook.id)

        record = await h.machine.process(delivery_id, "w1")

        assert record is not None
        assert record.status == DeliveryStatus.FAILED
        assert record.error_message == "Webhook deleted"
        assert h.endpoint.requests == []

    @pytest.mark.asyncio
    async def test_disabled_webhook_abandons_record(self) -> None:
        """A record whose webhook was disabled should become ABANDONED."""
        h = build_harness(200)
        webhook = await h.add_webhook()
        delivery_id = await h.publish()
        webhook.status = WebhookStatus.DISABLED
        await h.store.save_webhook(webhook)

        record = await h.machine.process(delivery_id, "w1")

        assert record is not None
        assert record.status == DeliveryStatus.ABANDONED
        assert record.error_message == "Webhook disabled"
        assert h.endpoint.requests == []

    @pytest.mark.asyncio
    async def test_circuit_breaker_abandons_queue(self) -> None:
        """Reaching the threshold should suspend the webhook and abandon waiting work."""
        h = build_harness(503, suspend_threshold=2)
        webhook = await h.add_webhook(retry_attempts=1)
        ids = [await h.publish(f"evt_{i}") for i in range(3)]

        await h.machine.process(ids[0], "w1")
        await h.machine.process(ids[1], "w1")

        stored = await h.store.get_webhook(webhook.id)
        assert stored is not None
        assert stored.status == WebhookStatus.SUSPENDED

        waiting = await h.store.get_delivery(ids[2])
        assert waiting is not None
        assert waiting.status == DeliveryStatus.ABANDONED
        assert waiting.error_message == SUSPENDED_REASON
        assert len(h.endpoint.requests) == 2

        # Suspended webhooks receive no new deliveries
        assert await h.dispatcher.on_event(make_event(id="evt_new")) == []

    @pytest.mark.asyncio
    async def test_suspending_failure_abandons_its_own_retry(self) -> None:
        """The failure that trips the breaker should not leave its record waiting."""
        h = build_harness(503, suspend_threshold=1)
        await h.add_webhook(retry_attempts=3)
        delivery_id = await h.publish()

        record = await h.machine.process(delivery_id, "w1")

        assert record is not None
        assert record.status == DeliveryStatus.ABANDONED
        assert record.error_message == SUSPENDED_REASON
        assert h.rescheduled == []


class TestGone:
    """410 handling."""

    @pytest.mark.asyncio
    async def test_gone_retried_by_default(self) -> None:
        """410 should be retried like any other 4xx by default."""
        h = build_harness(410)
        await h.add_webhook()
        delivery_id = await h.publish()

        record = await h.machine.process(delivery_id, "w1")

        assert record is not None
        assert record.status == DeliveryStatus.RETRY_SCHEDULED

    @pytest.mark.asyncio
    async def test_gone_fails_when_configured(self) -> None:
        """With abandon_on_gone a 410 should end the record as FAILED."""
        h = build_harness(410, abandon_on_gone=True)
        await h.add_webhook()
        delivery_id = await h.publish()

        record = await h.machine.process(delivery_id, "w1")

        assert record is not None
        assert record.status == DeliveryStatus.FAILED
        assert record.error_message == "HTTP 410: Gone"
        assert record.attempts == 1
