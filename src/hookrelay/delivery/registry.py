"""Webhook registry and circuit breaker.

Caches the webhook set for event matching and owns every mutation of a
webhook's failure counters. Outcomes for the same webhook are serialized
through a per-ID lock so concurrent workers cannot lose increments.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from hookrelay.exceptions import NotFoundError
from hookrelay.logging import get_logger
from hookrelay.models import Webhook, WebhookStatus, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable

    from hookrelay.storage import DeliveryStore

logger = get_logger(__name__)

SUSPENDED_REASON = "Webhook suspended after repeated failures"

# Owner-editable settings. Status and failure counters are not among them.
CONFIG_FIELDS = frozenset(
    {
        "url",
        "events",
        "description",
        "headers",
        "timeout",
        "retry_attempts",
        "rate_limit",
        "tags",
        "metadata",
    }
)


class WebhookRegistry:
    """Cached view of registered webhooks plus failure bookkeeping.

    The cache only serves ``match``. Counter updates always read the
    current webhook from the store under the webhook's lock, apply the
    change and write it back.

    Example:
        ```python
        registry = WebhookRegistry(store, suspend_threshold=10)
        for webhook in await registry.match("user.created"):
            ...
        suspended = await registry.record_outcome(webhook.id, success=False, reason="HTTP 503")
        ```
    """

    def __init__(
        self,
        store: DeliveryStore,
        suspend_threshold: int = 10,
        refresh_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self.suspend_threshold = suspend_threshold
        self.refresh_seconds = refresh_seconds
        self._clock = clock
        self._cache: dict[str, Webhook] = {}
        self._loaded_at: float | None = None
        self._refresh_lock = asyncio.Lock()
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return self._clock() - self._loaded_at >= self.refresh_seconds

    async def refresh(self) -> None:
        """Reload the cache from the store."""
        async with self._refresh_lock:
            webhooks = await self._store.list_webhooks()
            self._cache = {w.id: w for w in webhooks}
            self._loaded_at = self._clock()
        logger.debug("Webhook registry refreshed", count=len(self._cache))

    def invalidate(self, webhook_id: str | None = None) -> None:
        """Force a reload on the next lookup.

        Called by the admin surface after creating, updating or deleting
        a webhook.
        """
        if webhook_id is not None:
            self._cache.pop(webhook_id, None)
        self._loaded_at = None

    async def match(self, event_type: str) -> list[Webhook]:
        """Active webhooks subscribed to an event type."""
        if self._stale():
            await self.refresh()
        return [w for w in self._cache.values() if w.subscribes_to(event_type)]

    async def get(self, webhook_id: str) -> Webhook | None:
        """Current webhook state, read through to the store."""
        webhook = await self._store.get_webhook(webhook_id)
        if webhook is None:
            self._cache.pop(webhook_id, None)
        else:
            self._cache[webhook_id] = webhook
        return webhook

    async def record_outcome(
        self,
        webhook_id: str,
        success: bool,
        reason: str | None = None,
    ) -> bool:
        """Update a webhook's counters after an attempt.

        Success resets the failure streak. A failure that reaches the
        suspend threshold suspends the webhook and abandons its waiting
        deliveries.

        Args:
            webhook_id: Webhook the attempt was made against.
            success: Whether the attempt succeeded.
            reason: Failure reason of the attempt.

        Returns:
            True if this outcome suspended the webhook.
        """
        async with self._locks[webhook_id]:
            webhook = await self._store.get_webhook(webhook_id)
            if webhook is None:
                # Deleted while the attempt was in flight
                return False

            now = utc_now()
            suspended = False
            if success:
                webhook.record_success(at=now)
            else:
                suspended = webhook.record_failure(
                    reason or "unknown error", self.suspend_threshold, at=now
                )
            await self._store.save_webhook(webhook)
            self._cache[webhook_id] = webhook

        if suspended:
            logger.warning(
                "Webhook suspended",
                webhook_id=webhook_id,
                consecutive_failures=webhook.consecutive_failures,
                threshold=self.suspend_threshold,
            )
            await self._store.abandon_waiting(webhook_id, SUSPENDED_REASON, now)
        return suspended

    async def update_config(self, webhook_id: str, changes: dict[str, Any]) -> Webhook:
        """Apply owner configuration changes to a webhook.

        The changes are applied to a fresh read under the webhook's lock,
        so status and failure counters written by ``record_outcome`` are
        never rolled back by a concurrent edit.

        Args:
            webhook_id: Webhook to change.
            changes: New values, keyed by names from CONFIG_FIELDS.

        Raises:
            NotFoundError: If the webhook does not exist.
            ValueError: If a change names anything but a configuration field.
            pydantic.ValidationError: If the new values are invalid.
        """
        protected = set(changes) - CONFIG_FIELDS
        if protected:
            raise ValueError(f"not configuration fields: {', '.join(sorted(protected))}")

        async with self._locks[webhook_id]:
            current = await self._store.get_webhook(webhook_id)
            if current is None:
                raise NotFoundError("webhook", webhook_id)
            data = current.model_dump()
            data.update(changes)
            data["updated_at"] = utc_now()
            webhook = Webhook.model_validate(data)
            await self._store.save_webhook(webhook)
            self._cache[webhook_id] = webhook
        logger.info("Webhook updated", webhook_id=webhook_id, fields=sorted(changes))
        return webhook

    async def reactivate(self, webhook_id: str) -> Webhook:
        """Return a webhook to ACTIVE with a clean failure streak.

        Raises:
            NotFoundError: If the webhook does not exist.
        """
        async with self._locks[webhook_id]:
            webhook = await self._store.get_webhook(webhook_id)
            if webhook is None:
                raise NotFoundError("webhook", webhook_id)
            webhook.reactivate()
            await self._store.save_webhook(webhook)
            self._cache[webhook_id] = webhook
        logger.info("Webhook reactivated", webhook_id=webhook_id)
        return webhook

    async def disable(self, webhook_id: str) -> Webhook:
        """Turn a webhook off. Waiting deliveries are abandoned.

        Raises:
            NotFoundError: If the webhook does not exist.
        """
        async with self._locks[webhook_id]:
            webhook = await self._store.get_webhook(webhook_id)
            if webhook is None:
                raise NotFoundError("webhook", webhook_id)
            now = utc_now()
            webhook.status = WebhookStatus.DISABLED
            webhook.updated_at = now
            await self._store.save_webhook(webhook)
            self._cache[webhook_id] = webhook
        await self._store.abandon_waiting(webhook_id, "Webhook disabled", now)
        logger.info("Webhook disabled", webhook_id=webhook_id)
        return webhook


__all__ = ["CONFIG_FIELDS", "SUSPENDED_REASON", "WebhookRegistry"]
