"""Delivery record lifecycle.

    PENDING ──claim──> DELIVERING ──2xx──> DELIVERED
       ^                   │
       │                   ├──failure, attempts left──> RETRY_SCHEDULED
       │                   ├──failure, exhausted─────> ABANDONED
       │                   └──410 + abandon_on_gone──> FAILED
       └──rate limited: same status, due time pushed back

A record whose webhook was deleted becomes FAILED; one whose webhook is
SUSPENDED or DISABLED becomes ABANDONED. DELIVERED, FAILED and ABANDONED
are terminal.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from hookrelay.logging import get_logger
from hookrelay.models import DeliveryAttempt, DeliveryStatus, WebhookStatus, utc_now

from .scheduler import Exhausted, RetryScheduler

if TYPE_CHECKING:
    from collections.abc import Callable

    from structlog.stdlib import BoundLogger

    from hookrelay.models import DeliveryRecord, Webhook
    from hookrelay.storage import DeliveryStore

    from .executor import DeliveryExecutor
    from .ratelimit import RateLimiter
    from .registry import WebhookRegistry

logger = get_logger(__name__)

GONE = 410


class DeliveryStateMachine:
    """Drives one delivery record through a single processing step.

    Example:
        ```python
        machine = DeliveryStateMachine(store, registry, executor, limiter)
        record = await machine.process("dlv_abc", worker_id="worker-1")
        if record is None:
            ...  # another worker holds it, or it is not due
        ```
    """

    def __init__(
        self,
        store: DeliveryStore,
        registry: WebhookRegistry,
        executor: DeliveryExecutor,
        rate_limiter: RateLimiter,
        scheduler: RetryScheduler | None = None,
        claim_ttl_seconds: int = 120,
        rate_limit_deferral_ms: int = 5000,
        abandon_on_gone: bool = False,
        on_reschedule: Callable[[str, datetime], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the state machine.

        Args:
            store: Source of truth for records and history.
            registry: Webhook lookups and failure bookkeeping.
            executor: Performs the HTTP attempt.
            rate_limiter: Per-destination admission.
            scheduler: Backoff decisions.
            claim_ttl_seconds: Lease taken on a record while it is processed.
            rate_limit_deferral_ms: Push-back applied to rate-limited records.
            abandon_on_gone: Treat a 410 response as final (FAILED).
            on_reschedule: Called with (delivery_id, due_at) whenever a
                record goes back to waiting, typically the due-work queue.
            clock: Source of the current time.
        """
        self._store = store
        self._registry = registry
        self._executor = executor
        self._rate_limiter = rate_limiter
        self._scheduler = scheduler or RetryScheduler()
        self._lease = timedelta(seconds=claim_ttl_seconds)
        self._deferral = timedelta(milliseconds=rate_limit_deferral_ms)
        self.abandon_on_gone = abandon_on_gone
        self._on_reschedule = on_reschedule
        self._clock = clock

    async def process(self, delivery_id: str, worker_id: str) -> DeliveryRecord | None:
        """Claim a record and take it one step through its lifecycle.

        Args:
            delivery_id: Record to process.
            worker_id: Identity recorded on the claim.

        Returns:
            The record after this step, or None if it could not be claimed.

        Raises:
            StoreUnavailable: If the store cannot be reached. The record
                keeps its claim until the lease lapses.
        """
        now = self._clock()
        record = await self._store.claim_delivery(delivery_id, worker_id, now, self._lease)
        if record is None:
            logger.debug("Delivery not claimable", delivery_id=delivery_id, worker_id=worker_id)
            return None

        log = logger.bind(delivery_id=record.id, webhook_id=record.webhook_id)

        webhook = await self._registry.get(record.webhook_id)
        if webhook is None:
            record.mark_failed("Webhook deleted")
            return await self._settle(record, log)
        if webhook.status != WebhookStatus.ACTIVE:
            record.mark_abandoned(f"Webhook {webhook.status.value.lower()}")
            return await self._settle(record, log)
        if record.attempts >= record.max_attempts:
            # Reclaimed after its worker died mid-attempt, nothing left to spend
            record.mark_abandoned(record.error_message or "Attempts exhausted")
            return await self._settle(record, log)

        if not await self._rate_limiter.try_acquire(webhook.id, webhook.rate_limit):
            return await self._defer(record, now, log)

        return await self._attempt(record, webhook, now, log)

    async def _settle(self, record: DeliveryRecord, log: BoundLogger) -> DeliveryRecord:
        record.release_claim()
        await self._store.save_delivery(record)
        log.info(
            "Delivery closed",
            status=record.status.value,
            attempts=record.attempts,
            reason=record.error_message,
        )
        return record

    async def _defer(
        self, record: DeliveryRecord, now: datetime, log: BoundLogger
    ) -> DeliveryRecord:
        until = now + self._deferral
        if record.status == DeliveryStatus.DELIVERING:
            # Reclaimed record: park it as a retry instead of leaving it in flight
            record.mark_retry_scheduled(until, now)
        else:
            record.defer(until)
        record.release_claim()
        await self._store.save_delivery(record)
        log.info("Delivery deferred by rate limit", next_retry_at=until.isoformat())
        self._reschedule(record.id, until)
        return record

    async def _attempt(
        self,
        record: DeliveryRecord,
        webhook: Webhook,
        started_at: datetime,
        log: BoundLogger,
    ) -> DeliveryRecord:
        # Persist the consumed attempt before calling out
        record.mark_delivering(started_at)
        await self._store.save_delivery(record)

        outcome = await self._executor.attempt(record, webhook)
        finished_at = self._clock()

        record.apply_outcome(outcome)
        record.signature = outcome.signature
        if outcome.success:
            record.mark_delivered(finished_at)
        elif outcome.http_status == GONE and self.abandon_on_gone:
            record.mark_failed(outcome.error or "HTTP 410: Gone")
        else:
            decision = self._scheduler.next(
                attempts=record.attempts,
                base_delay_ms=record.retry_delay_ms,
                multiplier=record.retry_multiplier,
                max_attempts=record.max_attempts,
            )
            if isinstance(decision, Exhausted):
                record.mark_abandoned(outcome.error)
            else:
                record.mark_retry_scheduled(decision.at(finished_at), finished_at)
        record.release_claim()

        await self._store.append_attempt(
            DeliveryAttempt.from_outcome(record, outcome, attempted_at=started_at)
        )
        await self._store.save_delivery(record)

        log.info(
            "Delivery attempt recorded",
            attempt=record.attempts,
            status=record.status.value,
            http_status=outcome.http_status,
            duration_ms=outcome.duration_ms,
        )

        suspended = await self._registry.record_outcome(webhook.id, outcome.success, outcome.error)
        if record.status == DeliveryStatus.RETRY_SCHEDULED:
            if suspended:
                # The suspension abandoned this record along with the rest of the queue
                return await self._store.get_delivery(record.id) or record
            if record.next_retry_at is not None:
                self._reschedule(record.id, record.next_retry_at)
        return record

    def _reschedule(self, delivery_id: str, due_at: datetime) -> None:
        if self._on_reschedule is not None:
            self._on_reschedule(delivery_id, due_at)


__all__ = ["DeliveryStateMachine"]
