"""Abstract delivery store.

The store is the source of truth for webhooks, delivery records and the
attempt history. Queue handles and registry caches are always rebuilt from
it, so every operation the engine depends on for correctness (unique
dedupe keys, atomic claims) must be enforced here.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from hookrelay.models import WAITING_STATUSES, DeliveryStatus, matches_event

if TYPE_CHECKING:
    from hookrelay.models import DeliveryAttempt, DeliveryRecord, Webhook, WebhookStatus


def is_claimable(record: DeliveryRecord, now: datetime) -> bool:
    """Whether a worker may claim ``record`` at ``now``.

    Waiting records are claimable once due and not held by a live claim.
    DELIVERING records are claimable only after their claim lapsed (the
    worker holding them died mid-attempt).
    """
    claim_live = record.claim_expires_at is not None and record.claim_expires_at > now
    if record.status in WAITING_STATUSES:
        due = record.next_retry_at is None or record.next_retry_at <= now
        return due and not claim_live
    if record.status == DeliveryStatus.DELIVERING:
        return not claim_live
    return False


def webhook_matches(
    webhook: Webhook,
    user_id: str | None = None,
    status: WebhookStatus | None = None,
    event_type: str | None = None,
) -> bool:
    """Filter predicate shared by store implementations."""
    if user_id is not None and webhook.user_id != user_id:
        return False
    if status is not None and webhook.status != status:
        return False
    if event_type is not None:
        return any(matches_event(p, event_type) for p in webhook.events)
    return True


class DeliveryStore(ABC):
    """Persistence contract for the delivery engine.

    Implementations:
    - InMemoryStore: process-local, for tests and single-process use
    - SQLStore: SQLAlchemy async (SQLite, PostgreSQL)
    """

    async def initialize(self) -> None:  # noqa: B027
        """Prepare the backend (create tables, open pools)."""

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""

    async def __aenter__(self) -> DeliveryStore:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # Webhooks

    @abstractmethod
    async def create_webhook(self, webhook: Webhook) -> str:
        """Persist a new webhook and return its ID."""

    @abstractmethod
    async def get_webhook(self, webhook_id: str, user_id: str | None = None) -> Webhook | None:
        """Get a webhook, optionally scoped to its owner."""

    @abstractmethod
    async def list_webhooks(
        self,
        user_id: str | None = None,
        status: WebhookStatus | None = None,
        event_type: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Webhook]:
        """List webhooks, newest first.

        ``event_type`` keeps webhooks with a pattern matching that type.
        """

    @abstractmethod
    async def count_webhooks(
        self,
        user_id: str | None = None,
        status: WebhookStatus | None = None,
        event_type: str | None = None,
    ) -> int:
        """Count webhooks with the same filters as ``list_webhooks``."""

    @abstractmethod
    async def save_webhook(self, webhook: Webhook) -> None:
        """Overwrite a stored webhook.

        Raises:
            NotFoundError: If the webhook does not exist.
        """

    @abstractmethod
    async def delete_webhook(self, webhook_id: str, user_id: str | None = None) -> bool:
        """Delete a webhook. Its delivery history is kept.

        Returns:
            True if a webhook was deleted.
        """

    # Deliveries

    @abstractmethod
    async def create_delivery(self, record: DeliveryRecord) -> bool:
        """Persist a new delivery record.

        Returns:
            False if a record with the same ``dedupe_key`` already exists.
        """

    @abstractmethod
    async def get_delivery(self, delivery_id: str) -> DeliveryRecord | None:
        """Get a delivery record by ID."""

    @abstractmethod
    async def find_delivery(self, webhook_id: str, event_id: str) -> DeliveryRecord | None:
        """Get the dispatcher-created record for a (webhook, event) pair."""

    @abstractmethod
    async def save_delivery(self, record: DeliveryRecord) -> None:
        """Overwrite a stored delivery record."""

    @abstractmethod
    async def claim_delivery(
        self,
        delivery_id: str,
        worker_id: str,
        now: datetime,
        lease: timedelta,
    ) -> DeliveryRecord | None:
        """Atomically claim a record for one worker.

        Succeeds only if the record is claimable at ``now`` (see
        ``is_claimable``). At most one concurrent caller wins.

        Returns:
            The claimed record, or None if another worker holds it, it is
            not due yet, it is terminal or it does not exist.
        """

    @abstractmethod
    async def list_due(self, now: datetime, limit: int = 100) -> list[DeliveryRecord]:
        """Claimable records at ``now``, earliest due first."""

    @abstractmethod
    async def list_unfinished(self, limit: int | None = None) -> list[DeliveryRecord]:
        """All non-terminal records, earliest due first."""

    @abstractmethod
    async def abandon_waiting(self, webhook_id: str, reason: str, now: datetime) -> int:
        """Abandon a webhook's unclaimed PENDING/RETRY_SCHEDULED records.

        Returns:
            Number of records abandoned.
        """

    @abstractmethod
    async def list_deliveries(
        self,
        webhook_id: str,
        status: DeliveryStatus | None = None,
        event_type: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[DeliveryRecord]:
        """List a webhook's delivery records, newest first."""

    @abstractmethod
    async def count_deliveries(
        self,
        webhook_id: str,
        status: DeliveryStatus | None = None,
        event_type: str | None = None,
    ) -> int:
        """Count delivery records with the same filters as ``list_deliveries``."""

    @abstractmethod
    async def count_by_status(self, webhook_id: str) -> dict[DeliveryStatus, int]:
        """Delivery record counts per status (statuses with no records omitted)."""

    # Attempt history

    @abstractmethod
    async def append_attempt(self, attempt: DeliveryAttempt) -> None:
        """Append an entry to a delivery's attempt history."""

    @abstractmethod
    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        """Attempt history of a delivery, oldest first."""


__all__ = ["DeliveryStore", "is_claimable", "webhook_matches"]
