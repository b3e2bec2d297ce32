"""Data models for hookrelay.

Subscriptions:
    - Webhook: registered destination with retry policy and failure counters
    - WebhookView: owner-facing view with secrets masked
    - WebhookStatus: ACTIVE, SUSPENDED, DISABLED

Deliveries:
    - Event: platform event consumed from the bus
    - DeliveryRecord: one event's delivery lineage to one webhook
    - DeliveryAttempt: append-only attempt history
    - DeliveryOutcome: result of a single HTTP attempt
    - DeliveryStats: aggregate counts for the admin surface
"""

from .base import ensure_utc, generate_id, utc_now
from .delivery import (
    TERMINAL_STATUSES,
    WAITING_STATUSES,
    DeliveryAttempt,
    DeliveryOutcome,
    DeliveryRecord,
    DeliveryStats,
    DeliveryStatus,
)
from .event import Event
from .webhook import MASK, Webhook, WebhookStatus, WebhookView, mask_headers, matches_event

__all__ = [
    # Helpers
    "ensure_utc",
    "generate_id",
    "utc_now",
    # Subscriptions
    "MASK",
    "Webhook",
    "WebhookStatus",
    "WebhookView",
    "mask_headers",
    "matches_event",
    # Deliveries
    "Event",
    "DeliveryAttempt",
    "DeliveryOutcome",
    "DeliveryRecord",
    "DeliveryStats",
    "DeliveryStatus",
    "TERMINAL_STATUSES",
    "WAITING_STATUSES",
]
