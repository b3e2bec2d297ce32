"""Delivery operations mixin for WebhookService.

Provides delivery history, attempt history, manual redelivery, test
deliveries and per-webhook statistics.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

from hookrelay.delivery.dispatcher import new_delivery
from hookrelay.delivery.signing import canonical_payload
from hookrelay.exceptions import NotFoundError, RateLimitRejection, ValidationError
from hookrelay.logging import get_logger
from hookrelay.models import (
    DeliveryAttempt,
    DeliveryRecord,
    DeliveryStats,
    Event,
    WebhookStatus,
    generate_id,
    utc_now,
)

from .models import Page, TestDeliveryResult
from .subscriptions import validate_page

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from hookrelay.config import Settings
    from hookrelay.delivery import DeliveryExecutor, RateLimiter, WebhookRegistry
    from hookrelay.models import DeliveryStatus, Webhook
    from hookrelay.storage import DeliveryStore

logger = get_logger(__name__)

TEST_EVENT_TYPE = "webhook.test"


class DeliveryOpsMixin:
    """Mixin providing delivery history, redelivery and test deliveries.

    Expects these attributes from the base class:
    - store: DeliveryStore
    - registry: WebhookRegistry
    - executor: DeliveryExecutor
    - rate_limiter: RateLimiter | None
    - settings: Settings
    - enqueue: callable pushing (delivery_id, due_at) to the due-work queue
    - _require_webhook(webhook_id, user_id) -> Webhook
    """

    store: DeliveryStore
    registry: WebhookRegistry
    executor: DeliveryExecutor
    rate_limiter: RateLimiter | None
    settings: Settings
    enqueue: Callable[[str, datetime], Any] | None
    _require_webhook: Any

    async def _require_delivery(self, webhook_id: str, delivery_id: str) -> DeliveryRecord:
        record = await self.store.get_delivery(delivery_id)
        if record is None or record.webhook_id != webhook_id:
            raise NotFoundError("delivery", delivery_id)
        return record

    async def list_deliveries(
        self,
        webhook_id: str,
        user_id: str,
        status: DeliveryStatus | None = None,
        event_type: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[DeliveryRecord]:
        """List a webhook's deliveries, newest first.

        Raises:
            NotFoundError: If the user has no such webhook.
        """
        await self._require_webhook(webhook_id, user_id)
        offset = validate_page(page, limit)
        records = await self.store.list_deliveries(
            webhook_id, status=status, event_type=event_type, offset=offset, limit=limit
        )
        total = await self.store.count_deliveries(webhook_id, status=status, event_type=event_type)
        return Page[DeliveryRecord](items=records, total=total, page=page, limit=limit)

    async def get_delivery(self, webhook_id: str, delivery_id: str, user_id: str) -> DeliveryRecord:
        """Get one delivery of a webhook.

        Raises:
            NotFoundError: If the webhook or the delivery does not exist.
        """
        await self._require_webhook(webhook_id, user_id)
        return await self._require_delivery(webhook_id, delivery_id)

    async def get_attempts(
        self, webhook_id: str, delivery_id: str, user_id: str
    ) -> list[DeliveryAttempt]:
        """Attempt history of a delivery, oldest first.

        Raises:
            NotFoundError: If the webhook or the delivery does not exist.
        """
        await self._require_webhook(webhook_id, user_id)
        await self._require_delivery(webhook_id, delivery_id)
        return await self.store.list_attempts(delivery_id)

    async def redeliver(self, webhook_id: str, delivery_id: str, user_id: str) -> DeliveryRecord:
        """Send a finished delivery again as a new record.

        The new record carries the original event and payload, a fresh
        attempt budget and ``redelivery_of`` pointing at the original,
        which is left untouched.

        Raises:
            NotFoundError: If the webhook or the delivery does not exist.
            ValidationError: If the original is still in progress or the
                webhook is not active.
        """
        webhook = await self._require_webhook(webhook_id, user_id)
        original = await self._require_delivery(webhook_id, delivery_id)
        if not original.is_terminal:
            raise ValidationError("delivery", f"{delivery_id} is still {original.status.value}")
        if not webhook.is_active:
            raise ValidationError("webhook", f"{webhook_id} is {webhook.status.value}")

        now = utc_now()
        event = Event(
            id=original.event_id,
            type=original.event_type,
            timestamp=original.event_timestamp,
        )
        record = new_delivery(
            webhook,
            event,
            original.payload,
            self.settings.retry_delay_ms,
            self.settings.retry_multiplier,
            now,
        )
        record.redelivery_of = original.id
        await self.store.create_delivery(record)
        if self.enqueue is not None:
            self.enqueue(record.id, now)

        logger.info(
            "Redelivery queued",
            webhook_id=webhook_id,
            delivery_id=record.id,
            redelivery_of=original.id,
        )
        return record

    async def test_webhook(
        self,
        webhook_id: str,
        user_id: str,
        event_type: str = TEST_EVENT_TYPE,
        payload: dict[str, Any] | None = None,
    ) -> TestDeliveryResult:
        """Send a synthetic event right away and report what happened.

        The attempt is recorded as a one-attempt delivery. A successful
        test brings a suspended webhook back to ACTIVE; a failed one does
        not count towards the circuit breaker.

        Raises:
            NotFoundError: If the user has no such webhook.
            RateLimitRejection: If the destination's rate limit is reached.
        """
        webhook = await self._require_webhook(webhook_id, user_id)
        if self.rate_limiter is not None and not await self.rate_limiter.try_acquire(
            webhook.id, webhook.rate_limit
        ):
            raise RateLimitRejection(webhook.id, self.settings.rate_limit_deferral_ms)

        now = utc_now()
        event = Event(
            id=generate_id("evt_test"),
            type=event_type,
            payload=payload
            or {
                "test": True,
                "message": "This is a test webhook delivery",
                "timestamp": now.isoformat(),
            },
            timestamp=now,
        )
        record = new_delivery(
            webhook,
            event,
            canonical_payload(event),
            self.settings.retry_delay_ms,
            self.settings.retry_multiplier,
            now,
            max_attempts=1,
        )
        # Created already claimed so no worker picks it up
        record.claimed_by = f"test:{user_id}"
        record.claim_expires_at = now + timedelta(seconds=self.settings.claim_ttl_seconds)
        record.mark_delivering(now)
        await self.store.create_delivery(record)

        outcome = await self.executor.attempt(record, webhook)
        finished_at = utc_now()
        record.apply_outcome(outcome)
        record.signature = outcome.signature
        if outcome.success:
            record.mark_delivered(finished_at)
        else:
            record.mark_abandoned(outcome.error)
        record.release_claim()
        await self.store.append_attempt(DeliveryAttempt.from_outcome(record, outcome, now))
        await self.store.save_delivery(record)

        reactivated = False
        if outcome.success:
            if webhook.status == WebhookStatus.SUSPENDED:
                await self.registry.reactivate(webhook.id)
                reactivated = True
            await self.registry.record_outcome(webhook.id, success=True)

        logger.info(
            "Test delivery sent",
            webhook_id=webhook.id,
            delivery_id=record.id,
            success=outcome.success,
            reactivated=reactivated,
        )
        return TestDeliveryResult(
            delivery_id=record.id,
            event_id=event.id,
            success=outcome.success,
            message=(
                "Test webhook delivered successfully"
                if outcome.success
                else "Test webhook delivery failed"
            ),
            response_status=outcome.http_status,
            response_time_ms=outcome.duration_ms,
            error=outcome.error,
            reactivated=reactivated,
        )

    async def get_stats(self, webhook_id: str, user_id: str) -> DeliveryStats:
        """Delivery counts and health counters for a webhook.

        Raises:
            NotFoundError: If the user has no such webhook.
        """
        webhook: Webhook = await self._require_webhook(webhook_id, user_id)
        by_status = await self.store.count_by_status(webhook_id)
        return DeliveryStats(
            webhook_id=webhook_id,
            total=sum(by_status.values()),
            by_status=by_status,
            success_count=webhook.success_count,
            failure_count=webhook.failure_count,
            consecutive_failures=webhook.consecutive_failures,
            last_success_at=webhook.last_success_at,
            last_failure_at=webhook.last_failure_at,
        )


__all__ = ["TEST_EVENT_TYPE", "DeliveryOpsMixin"]
