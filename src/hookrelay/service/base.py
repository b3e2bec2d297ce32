"""Admin-facing webhook service.

This module provides the WebhookService that an API layer calls on behalf
of webhook owners.

Example:
    ```python
    from hookrelay.service import WebhookService

    service = engine.service
    webhook = await service.create_webhook(
        user_id="user_123",
        url="https://example.com/hooks",
        events=["user.*"],
    )
    print(f"Secret (shown once): {webhook.secret}")

    result = await service.test_webhook(webhook.id, user_id="user_123")
    print(result.message)
    ```
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from hookrelay.config import Settings
from hookrelay.delivery import DeliveryExecutor, RateLimiter, WebhookRegistry
from hookrelay.storage import DeliveryStore

from .deliveries import DeliveryOpsMixin
from .subscriptions import SubscriptionMixin


@dataclass
class WebhookService(SubscriptionMixin, DeliveryOpsMixin):
    """Webhook management for owners.

    This service provides:
    - create/get/list/update/delete webhooks (secrets masked on read)
    - reactivate_webhook/disable_webhook
    - test_webhook(): immediate synthetic delivery
    - list_deliveries/get_delivery/get_attempts: delivery history
    - redeliver(): resend a finished delivery as a new record
    - get_stats(): counts by status and health counters

    Every operation is scoped to the calling user; another user's
    webhooks look like they do not exist.

    Attributes:
        store: Source of truth for webhooks and deliveries.
        registry: Webhook cache and circuit breaker.
        executor: Performs test deliveries.
        settings: Limits and retry policy defaults.
        rate_limiter: Applied to test deliveries when set.
        enqueue: Pushes redeliveries onto the due-work queue when set.
    """

    store: DeliveryStore
    registry: WebhookRegistry
    executor: DeliveryExecutor
    settings: Settings = field(default_factory=Settings)
    rate_limiter: RateLimiter | None = None
    enqueue: Callable[[str, datetime], Any] | None = None


__all__ = ["WebhookService"]
