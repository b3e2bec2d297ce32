"""Webhook subscription models.

A Webhook is a registered destination (URL + secret + event filters) owned
by a user. Its retry policy is copied into every DeliveryRecord created for
it, and its failure counters drive the circuit breaker.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

from .base import generate_id, utc_now

# Placeholder returned instead of secret values
MASK = "***"

# Custom header names containing any of these are masked on read
SENSITIVE_HEADER_MARKERS = ("auth", "token", "key")


class WebhookStatus(str, Enum):
    """Lifecycle status of a webhook subscription."""

    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"  # Tripped by the circuit breaker
    DISABLED = "DISABLED"  # Turned off by its owner


def matches_event(pattern: str, event_type: str) -> bool:
    """Check an event type against a subscription pattern.

    Matching is case-sensitive. A pattern is either an exact event type or
    a shell-style wildcard: ``user.*`` matches ``user.created`` and ``*``
    matches everything.
    """
    if pattern == event_type:
        return True
    if "*" not in pattern and "?" not in pattern and "[" not in pattern:
        return False
    return fnmatchcase(event_type, pattern)


class Webhook(BaseModel):
    """A registered webhook subscription.

    Attributes:
        id: Unique identifier for this webhook.
        user_id: User who owns this webhook.
        url: HTTP(S) endpoint receiving deliveries.
        events: Event type patterns this webhook subscribes to.
        secret: Shared secret for HMAC-SHA256 signatures. Never exposed.
        headers: Custom headers sent with every delivery.
        description: Optional human-readable description.
        status: ACTIVE, SUSPENDED or DISABLED.
        failure_count: Lifetime failed attempts.
        consecutive_failures: Failed attempts since the last success.
        last_failure_at: When the last failed attempt happened.
        last_failure_reason: Error message of the last failed attempt.
        success_count: Lifetime successful deliveries.
        last_success_at: When the last successful delivery happened.
        rate_limit: Deliveries per minute, overriding the global default.
        timeout: Request timeout in milliseconds.
        retry_attempts: Maximum attempts per delivery.
        tags: Free-form labels.
        metadata: Free-form metadata.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str = Field(default_factory=lambda: generate_id("whk"))
    user_id: str = Field(min_length=1, description="User who owns this webhook")
    url: HttpUrl = Field(description="Endpoint receiving deliveries")
    events: list[str] = Field(min_length=1, description="Subscribed event type patterns")
    secret: str = Field(min_length=1, description="Shared secret for HMAC-SHA256 signatures")
    headers: dict[str, str] = Field(default_factory=dict, description="Custom headers")
    description: str | None = Field(default=None, description="Human-readable description")
    status: WebhookStatus = Field(default=WebhookStatus.ACTIVE)
    failure_count: int = Field(default=0, ge=0)
    consecutive_failures: int = Field(default=0, ge=0)
    last_failure_at: datetime | None = None
    last_failure_reason: str | None = None
    success_count: int = Field(default=0, ge=0)
    last_success_at: datetime | None = None
    rate_limit: int | None = Field(default=None, ge=1, le=1000, description="Deliveries/minute")
    timeout: int = Field(default=10000, ge=1000, le=60000, description="Request timeout (ms)")
    retry_attempts: int = Field(default=3, ge=1, le=10, description="Maximum attempts")
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("events")
    @classmethod
    def _validate_events(cls, events: list[str]) -> list[str]:
        cleaned = [e.strip() for e in events]
        if any(not e for e in cleaned):
            raise ValueError("event patterns must be non-empty")
        # Keep order, drop duplicates
        return list(dict.fromkeys(cleaned))

    @field_validator("url")
    @classmethod
    def _validate_scheme(cls, url: HttpUrl) -> HttpUrl:
        if url.scheme not in ("http", "https"):
            raise ValueError("webhook URL must use http or https")
        return url

    @property
    def is_active(self) -> bool:
        """Whether new deliveries may be created and attempted."""
        return self.status == WebhookStatus.ACTIVE

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this webhook is active and subscribed to an event type."""
        return self.is_active and any(matches_event(p, event_type) for p in self.events)

    def record_success(self, at: datetime | None = None) -> Webhook:
        """Count a successful delivery and reset the failure streak."""
        at = at or utc_now()
        self.success_count += 1
        self.consecutive_failures = 0
        self.last_success_at = at
        self.updated_at = at
        return self

    def record_failure(self, reason: str, threshold: int, at: datetime | None = None) -> bool:
        """Count a failed attempt and trip the circuit breaker if needed.

        Args:
            reason: Error message of the failed attempt.
            threshold: Consecutive failures that suspend the webhook.
            at: When the failure happened.

        Returns:
            True if this failure suspended the webhook.
        """
        at = at or utc_now()
        self.failure_count += 1
        self.consecutive_failures += 1
        self.last_failure_at = at
        self.last_failure_reason = reason
        self.updated_at = at

        if self.status == WebhookStatus.ACTIVE and self.consecutive_failures >= threshold:
            self.status = WebhookStatus.SUSPENDED
            return True
        return False

    def reactivate(self, at: datetime | None = None) -> Webhook:
        """Return to ACTIVE with a clean failure streak."""
        self.status = WebhookStatus.ACTIVE
        self.consecutive_failures = 0
        self.updated_at = at or utc_now()
        return self


class WebhookView(BaseModel):
    """Webhook as exposed to its owner: secret and sensitive headers masked."""

    model_config = ConfigDict(extra="forbid")

    id: str
    user_id: str
    url: str
    events: list[str]
    secret: str = MASK
    headers: dict[str, str]
    description: str | None
    status: WebhookStatus
    is_active: bool
    failure_count: int
    consecutive_failures: int
    last_failure_at: datetime | None
    last_failure_reason: str | None
    success_count: int
    last_success_at: datetime | None
    rate_limit: int | None
    timeout: int
    retry_attempts: int
    tags: list[str]
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_webhook(cls, webhook: Webhook) -> WebhookView:
        """Build a masked view of a webhook."""
        return cls(
            id=webhook.id,
            user_id=webhook.user_id,
            url=str(webhook.url),
            events=list(webhook.events),
            headers=mask_headers(webhook.headers),
            description=webhook.description,
            status=webhook.status,
            is_active=webhook.is_active,
            failure_count=webhook.failure_count,
            consecutive_failures=webhook.consecutive_failures,
            last_failure_at=webhook.last_failure_at,
            last_failure_reason=webhook.last_failure_reason,
            success_count=webhook.success_count,
            last_success_at=webhook.last_success_at,
            rate_limit=webhook.rate_limit,
            timeout=webhook.timeout,
            retry_attempts=webhook.retry_attempts,
            tags=list(webhook.tags),
            metadata=dict(webhook.metadata),
            created_at=webhook.created_at,
            updated_at=webhook.updated_at,
        )


def mask_headers(headers: dict[str, str]) -> dict[str, str]:
    """Mask values of headers whose names look like credentials."""
    masked: dict[str, str] = {}
    for name, value in headers.items():
        lowered = name.lower()
        if any(marker in lowered for marker in SENSITIVE_HEADER_MARKERS):
            masked[name] = MASK
        else:
            masked[name] = value
    return masked


__all__ = [
    "MASK",
    "Webhook",
    "WebhookStatus",
    "WebhookView",
    "mask_headers",
    "matches_event",
]
