"""In-memory delivery store.

Keeps copies of every model so callers can never mutate stored state by
accident. Each operation runs without awaiting in between its read and its
write, which makes claims atomic within one event loop.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from hookrelay.exceptions import NotFoundError
from hookrelay.logging import get_logger
from hookrelay.models import WAITING_STATUSES, DeliveryStatus

from .base import DeliveryStore, is_claimable, webhook_matches

if TYPE_CHECKING:
    from hookrelay.models import DeliveryAttempt, DeliveryRecord, Webhook, WebhookStatus

logger = get_logger(__name__)


def _due_key(record: DeliveryRecord) -> tuple[datetime, datetime]:
    return (record.next_retry_at or record.created_at, record.created_at)


def _page(items: list, offset: int, limit: int | None) -> list:
    if limit is None:
        return items[offset:]
    return items[offset : offset + limit]


class InMemoryStore(DeliveryStore):
    """Process-local store for tests and single-process deployments.

    Example:
        ```python
        async with InMemoryStore() as store:
            await store.create_webhook(webhook)
            record = await store.claim_delivery(delivery_id, "worker-1", now, lease)
        ```
    """

    def __init__(self) -> None:
        self._webhooks: dict[str, Webhook] = {}
        self._deliveries: dict[str, DeliveryRecord] = {}
        self._dedupe: dict[str, str] = {}
        self._attempts: dict[str, list[DeliveryAttempt]] = defaultdict(list)

    # Webhooks

    async def create_webhook(self, webhook: Webhook) -> str:
        self._webhooks[webhook.id] = webhook.model_copy(deep=True)
        return webhook.id

    async def get_webhook(self, webhook_id: str, user_id: str | None = None) -> Webhook | None:
        webhook = self._webhooks.get(webhook_id)
        if webhook is None or (user_id is not None and webhook.user_id != user_id):
            return None
        return webhook.model_copy(deep=True)

    def _filter_webhooks(
        self,
        user_id: str | None,
        status: WebhookStatus | None,
        event_type: str | None,
    ) -> list[Webhook]:
        matched = [
            w for w in self._webhooks.values() if webhook_matches(w, user_id, status, event_type)
        ]
        return sorted(matched, key=lambda w: w.created_at, reverse=True)

    async def list_webhooks(
        self,
        user_id: str | None = None,
        status: WebhookStatus | None = None,
        event_type: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Webhook]:
        matched = self._filter_webhooks(user_id, status, event_type)
        return [w.model_copy(deep=True) for w in _page(matched, offset, limit)]

    async def count_webhooks(
        self,
        user_id: str | None = None,
        status: WebhookStatus | None = None,
        event_type: str | None = None,
    ) -> int:
        return len(self._filter_webhooks(user_id, status, event_type))

    async def save_webhook(self, webhook: Webhook) -> None:
        if webhook.id not in self._webhooks:
            raise NotFoundError("webhook", webhook.id)
        self._webhooks[webhook.id] = webhook.model_copy(deep=True)

    async def delete_webhook(self, webhook_id: str, user_id: str | None = None) -> bool:
        webhook = self._webhooks.get(webhook_id)
        if webhook is None or (user_id is not None and webhook.user_id != user_id):
            return False
        del self._webhooks[webhook_id]
        return True

    # Deliveries

    async def create_delivery(self, record: DeliveryRecord) -> bool:
        if record.dedupe_key is not None:
            if record.dedupe_key in self._dedupe:
                return False
            self._dedupe[record.dedupe_key] = record.id
        self._deliveries[record.id] = record.model_copy(deep=True)
        return True

    async def get_delivery(self, delivery_id: str) -> DeliveryRecord | None:
        record = self._deliveries.get(delivery_id)
        return record.model_copy(deep=True) if record else None

    async def find_delivery(self, webhook_id: str, event_id: str) -> DeliveryRecord | None:
        delivery_id = self._dedupe.get(f"{webhook_id}:{event_id}")
        if delivery_id is None:
            return None
        return await self.get_delivery(delivery_id)

    async def save_delivery(self, record: DeliveryRecord) -> None:
        if record.id not in self._deliveries:
            raise NotFoundError("delivery", record.id)
        self._deliveries[record.id] = record.model_copy(deep=True)

    async def claim_delivery(
        self,
        delivery_id: str,
        worker_id: str,
        now: datetime,
        lease: timedelta,
    ) -> DeliveryRecord | None:
        record = self._deliveries.get(delivery_id)
        if record is None or not is_claimable(record, now):
            return None
        record.claimed_by = worker_id
        record.claim_expires_at = now + lease
        return record.model_copy(deep=True)

    async def list_due(self, now: datetime, limit: int = 100) -> list[DeliveryRecord]:
        due = [r for r in self._deliveries.values() if is_claimable(r, now)]
        due.sort(key=_due_key)
        return [r.model_copy(deep=True) for r in due[:limit]]

    async def list_unfinished(self, limit: int | None = None) -> list[DeliveryRecord]:
        unfinished = [r for r in self._deliveries.values() if not r.is_terminal]
        unfinished.sort(key=_due_key)
        return [r.model_copy(deep=True) for r in _page(unfinished, 0, limit)]

    async def abandon_waiting(self, webhook_id: str, reason: str, now: datetime) -> int:
        abandoned = 0
        for record in self._deliveries.values():
            if record.webhook_id != webhook_id or record.status not in WAITING_STATUSES:
                continue
            if record.claim_expires_at is not None and record.claim_expires_at > now:
                continue
            record.mark_abandoned(reason)
            record.release_claim()
            abandoned += 1
        if abandoned:
            logger.info("Abandoned waiting deliveries", webhook_id=webhook_id, count=abandoned)
        return abandoned

    def _filter_deliveries(
        self,
        webhook_id: str,
        status: DeliveryStatus | None,
        event_type: str | None,
    ) -> list[DeliveryRecord]:
        matched = [
            r
            for r in self._deliveries.values()
            if r.webhook_id == webhook_id
            and (status is None or r.status == status)
            and (event_type is None or r.event_type == event_type)
        ]
        return sorted(matched, key=lambda r: r.created_at, reverse=True)

    async def list_deliveries(
        self,
        webhook_id: str,
        status: DeliveryStatus | None = None,
        event_type: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[DeliveryRecord]:
        matched = self._filter_deliveries(webhook_id, status, event_type)
        return [r.model_copy(deep=True) for r in _page(matched, offset, limit)]

    async def count_deliveries(
        self,
        webhook_id: str,
        status: DeliveryStatus | None = None,
        event_type: str | None = None,
    ) -> int:
        return len(self._filter_deliveries(webhook_id, status, event_type))

    async def count_by_status(self, webhook_id: str) -> dict[DeliveryStatus, int]:
        counts = Counter(r.status for r in self._deliveries.values() if r.webhook_id == webhook_id)
        return dict(counts)

    # Attempt history

    async def append_attempt(self, attempt: DeliveryAttempt) -> None:
        self._attempts[attempt.delivery_id].append(attempt)

    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        return sorted(self._attempts.get(delivery_id, []), key=lambda a: a.attempt)


__all__ = ["InMemoryStore"]
