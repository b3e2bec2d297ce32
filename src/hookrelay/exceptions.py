"""hookrelay exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from HookRelayError for easy catching.

Delivery failures (timeouts, 5xx, 4xx) are never raised out of the engine:
the executor classifies them with the codes defined here and the state
machine records them on the DeliveryRecord. Only engine-internal faults
(store or counter store unavailable) propagate to callers and logs.
"""

from __future__ import annotations


class HookRelayError(Exception):
    """Base exception for all hookrelay errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "hookrelay_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(HookRelayError):
    """Invalid input provided.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(HookRelayError):
    """Resource not found.

    Attributes:
        resource_type: Type of resource (e.g., "webhook", "delivery").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class ConfigurationError(HookRelayError):
    """Configuration error.

    Raised at webhook registration time for an invalid URL, a missing
    secret or unusable subscription patterns. Such webhooks never reach
    the delivery engine.
    """

    code: str = "configuration_error"


class WebhookLimitError(HookRelayError):
    """User already owns the maximum number of webhooks."""

    code: str = "webhook_limit_exceeded"

    def __init__(self, user_id: str, limit: int) -> None:
        self.user_id = user_id
        self.limit = limit
        super().__init__(f"Maximum {limit} webhooks allowed per user")


class InvalidTransitionError(HookRelayError):
    """A delivery record was asked to leave a terminal state."""

    code: str = "invalid_transition"

    def __init__(self, delivery_id: str, current: str, target: str) -> None:
        self.delivery_id = delivery_id
        self.current = current
        self.target = target
        super().__init__(f"Delivery {delivery_id} cannot move from {current} to {target}")


class DeliveryError(HookRelayError):
    """Base class for failed delivery attempts."""

    code: str = "delivery_error"


class TransientDeliveryError(DeliveryError):
    """Timeout, connection failure or 5xx response. Retried."""

    code: str = "transient_delivery_error"


class PermanentDeliveryError(DeliveryError):
    """4xx response (other than 429) or malformed URL.

    Still retried up to max_attempts: destinations misconfigure their
    status codes often enough that the engine does not trust them.
    """

    code: str = "permanent_delivery_error"


class RateLimitRejection(HookRelayError):
    """Per-destination rate limit reached.

    A scheduling deferral, not a failure: never counted against attempts.

    Attributes:
        retry_after_ms: Milliseconds until the delivery is retried.
    """

    code: str = "rate_limit_rejection"

    def __init__(self, webhook_id: str, retry_after_ms: int) -> None:
        self.webhook_id = webhook_id
        self.retry_after_ms = retry_after_ms
        super().__init__(f"Rate limit reached for {webhook_id}. Retry after {retry_after_ms}ms")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "webhook_id": self.webhook_id,
                "retry_after_ms": self.retry_after_ms,
                "message": self.message,
            }
        }


class StoreUnavailable(HookRelayError):
    """The relational store could not be reached.

    Workers back off and retry claiming work. No data is lost because the
    due-work state lives in the store.
    """

    code: str = "store_unavailable"


class CounterStoreUnavailable(HookRelayError):
    """The rate-limit counter store could not be reached."""

    code: str = "counter_store_unavailable"
