"""Event fan-out.

Turns one platform event into one delivery record per subscribed webhook.
Creating the record is the durability boundary: once it is stored the
event will be delivered (or abandoned) even if this process dies before
the queue handle is pushed.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from hookrelay.logging import get_logger
from hookrelay.models import DeliveryRecord, Event, utc_now

from .signing import canonical_payload

if TYPE_CHECKING:
    from collections.abc import Callable

    from hookrelay.models import Webhook
    from hookrelay.storage import DeliveryStore

    from .registry import WebhookRegistry

logger = get_logger(__name__)


def dedupe_key(webhook_id: str, event_id: str) -> str:
    return f"{webhook_id}:{event_id}"


def new_delivery(
    webhook: Webhook,
    event: Event,
    payload: str,
    retry_delay_ms: int,
    retry_multiplier: float,
    now: datetime,
    key: str | None = None,
    max_attempts: int | None = None,
) -> DeliveryRecord:
    """Build a PENDING record due at ``now`` with the policy snapshot."""
    return DeliveryRecord(
        webhook_id=webhook.id,
        event_id=event.id,
        event_type=event.type,
        event_timestamp=event.timestamp,
        payload=payload,
        max_attempts=max_attempts or webhook.retry_attempts,
        retry_delay_ms=retry_delay_ms,
        retry_multiplier=retry_multiplier,
        next_retry_at=now,
        created_at=now,
        dedupe_key=key,
    )


class Dispatcher:
    """Creates delivery records for an event and enqueues them.

    Example:
        ```python
        dispatcher = Dispatcher(store, registry, enqueue=queue.push)
        created = await dispatcher.on_event(Event(type="user.created", payload={...}))
        ```
    """

    def __init__(
        self,
        store: DeliveryStore,
        registry: WebhookRegistry,
        enqueue: Callable[[str, datetime], Any] | None = None,
        retry_delay_ms: int = 1000,
        retry_multiplier: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._registry = registry
        self._enqueue = enqueue
        self.retry_delay_ms = retry_delay_ms
        self.retry_multiplier = retry_multiplier
        self._clock = clock

    async def on_event(self, event: Event | dict[str, Any]) -> list[str]:
        """Fan an event out to every matching active webhook.

        Replaying an event is harmless: a (webhook, event) pair that
        already has a record is skipped.

        Args:
            event: Event, or a raw bus message.

        Returns:
            IDs of the delivery records created by this call.
        """
        if not isinstance(event, Event):
            event = Event.from_message(event)

        webhooks = await self._registry.match(event.type)
        if not webhooks:
            logger.debug("No webhooks subscribed", event_id=event.id, event_type=event.type)
            return []

        payload = canonical_payload(event)
        now = self._clock()
        created: list[str] = []

        for webhook in webhooks:
            key = dedupe_key(webhook.id, event.id)
            if await self._store.find_delivery(webhook.id, event.id) is not None:
                logger.debug("Delivery already exists", webhook_id=webhook.id, event_id=event.id)
                continue

            record = new_delivery(
                webhook,
                event,
                payload,
                self.retry_delay_ms,
                self.retry_multiplier,
                now,
                key=key,
            )
            # The unique dedupe key settles races between concurrent dispatchers
            if not await self._store.create_delivery(record):
                continue

            created.append(record.id)
            if self._enqueue is not None:
                self._enqueue(record.id, now)

        logger.info(
            "Event dispatched",
            event_id=event.id,
            event_type=event.type,
            matched=len(webhooks),
            created=len(created),
        )
        return created


__all__ = ["Dispatcher", "dedupe_key", "new_delivery"]
