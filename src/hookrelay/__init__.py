"""hookrelay: reliable, signed webhook delivery.

Turns internal platform events into HMAC-signed HTTP callbacks with
bounded retries, exponential backoff, per-destination rate limiting and a
circuit breaker that suspends endpoints which keep failing.

Quick Start:
    from hookrelay import DeliveryEngine, Event

    async with DeliveryEngine.create() as engine:
        webhook = await engine.service.create_webhook(
            user_id="user_123",
            url="https://example.com/hooks",
            events=["user.*"],
        )
        await engine.publish(Event(type="user.created", payload={"id": "u_1"}))

Delivery lifecycle:
    - PENDING: created, waiting for its first attempt
    - DELIVERING: claimed by a worker, attempt in flight
    - RETRY_SCHEDULED: failed, waiting for its backoff to elapse
    - DELIVERED: endpoint answered 2xx (terminal)
    - ABANDONED: attempts exhausted or webhook suspended/disabled (terminal)
    - FAILED: webhook deleted or endpoint gone (terminal)

Receivers verify requests with ``hookrelay.delivery.signing.verify``.
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Engine
from .engine import DeliveryEngine

# Exceptions
from .exceptions import (
    ConfigurationError,
    CounterStoreUnavailable,
    DeliveryError,
    HookRelayError,
    InvalidTransitionError,
    NotFoundError,
    PermanentDeliveryError,
    RateLimitRejection,
    StoreUnavailable,
    TransientDeliveryError,
    ValidationError,
    WebhookLimitError,
)

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

# Models
from .models import (
    DeliveryAttempt,
    DeliveryRecord,
    DeliveryStats,
    DeliveryStatus,
    Event,
    Webhook,
    WebhookStatus,
    WebhookView,
)

# Service
from .service import Page, TestDeliveryResult, WebhookService

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Engine
    "DeliveryEngine",
    # Exceptions
    "HookRelayError",
    "ValidationError",
    "NotFoundError",
    "ConfigurationError",
    "WebhookLimitError",
    "InvalidTransitionError",
    "DeliveryError",
    "TransientDeliveryError",
    "PermanentDeliveryError",
    "RateLimitRejection",
    "StoreUnavailable",
    "CounterStoreUnavailable",
    # Logging
    "configure_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    "unbind_context",
    # Models
    "Event",
    "Webhook",
    "WebhookStatus",
    "WebhookView",
    "DeliveryRecord",
    "DeliveryStatus",
    "DeliveryAttempt",
    "DeliveryStats",
    # Service
    "WebhookService",
    "Page",
    "TestDeliveryResult",
]
