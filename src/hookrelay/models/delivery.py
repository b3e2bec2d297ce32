"""Delivery records, attempt history and attempt outcomes.

A DeliveryRecord is one attempt lineage for delivering a single event to a
single webhook. The record's payload is captured once, at enqueue time, so
every retry sends byte-identical content. Retry policy is snapshotted from
the webhook when the record is created.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hookrelay.exceptions import InvalidTransitionError

from .base import generate_id, utc_now


class DeliveryStatus(str, Enum):
    """Lifecycle status of a delivery record."""

    PENDING = "PENDING"
    DELIVERING = "DELIVERING"
    DELIVERED = "DELIVERED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.ABANDONED}
)

# States holding a due time and waiting for a worker
WAITING_STATUSES = frozenset({DeliveryStatus.PENDING, DeliveryStatus.RETRY_SCHEDULED})


class DeliveryRecord(BaseModel):
    """Persistent state of one event's delivery to one webhook.

    Attributes:
        id: Unique identifier for this delivery.
        webhook_id: Owning webhook.
        event_id: Source event ID (receivers dedupe on it).
        event_type: Source event type.
        event_timestamp: When the source event occurred.
        payload: Canonical JSON body, immutable across retries.
        signature: Signature sent with the most recent attempt.
        status: Current lifecycle status.
        attempts: Attempts made so far.
        max_attempts: Attempt budget, copied from the webhook at creation.
        retry_delay_ms: Base backoff delay, copied at creation.
        retry_multiplier: Backoff multiplier, copied at creation.
        response_status: HTTP status of the last attempt.
        response_body: Truncated response body of the last attempt.
        response_time_ms: Duration of the last attempt.
        error_message: Failure reason of the last attempt.
        next_retry_at: When the record is next due.
        last_attempt_at: When the last attempt started.
        delivered_at: When the record reached DELIVERED.
        claimed_by: Worker currently holding the record.
        claim_expires_at: When that worker's claim lapses.
        redelivery_of: Original delivery for manual redeliveries.
        dedupe_key: ``{webhook_id}:{event_id}`` for dispatcher-created records.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    webhook_id: str
    event_id: str
    event_type: str
    event_timestamp: datetime
    payload: str = Field(description="Canonical JSON body")
    signature: str | None = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(ge=1, le=10)
    retry_delay_ms: int = Field(default=1000, ge=1)
    retry_multiplier: float = Field(default=2.0, ge=1.0)
    response_status: int | None = None
    response_body: str | None = None
    response_time_ms: int | None = None
    error_message: str | None = None
    next_retry_at: datetime | None = None
    last_attempt_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    delivered_at: datetime | None = None
    claimed_by: str | None = None
    claim_expires_at: datetime | None = None
    redelivery_of: str | None = None
    dedupe_key: str | None = None

    @model_validator(mode="after")
    def _attempts_within_budget(self) -> DeliveryRecord:
        if self.attempts > self.max_attempts:
            raise ValueError(
                f"attempts ({self.attempts}) cannot exceed max_attempts ({self.max_attempts})"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def attempts_remaining(self) -> int:
        return self.max_attempts - self.attempts

    def _guard(self, target: DeliveryStatus) -> None:
        if self.status.is_terminal:
            raise InvalidTransitionError(self.id, self.status.value, target.value)

    def mark_delivering(self, at: datetime) -> DeliveryRecord:
        """Consume one attempt and enter DELIVERING."""
        self._guard(DeliveryStatus.DELIVERING)
        self.attempts += 1
        self.status = DeliveryStatus.DELIVERING
        self.last_attempt_at = at
        self.next_retry_at = None
        return self

    def apply_outcome(self, outcome: DeliveryOutcome) -> DeliveryRecord:
        """Copy the response details of an attempt onto the record."""
        self.response_status = outcome.http_status
        self.response_body = outcome.response_body
        self.response_time_ms = outcome.duration_ms
        self.error_message = outcome.error
        return self

    def mark_delivered(self, at: datetime) -> DeliveryRecord:
        """Enter DELIVERED (terminal)."""
        self._guard(DeliveryStatus.DELIVERED)
        self.status = DeliveryStatus.DELIVERED
        self.delivered_at = at
        self.next_retry_at = None
        self.error_message = None
        return self

    def mark_retry_scheduled(self, next_retry_at: datetime, now: datetime) -> DeliveryRecord:
        """Enter RETRY_SCHEDULED, due at ``next_retry_at``."""
        self._guard(DeliveryStatus.RETRY_SCHEDULED)
        if next_retry_at <= now:
            raise ValueError("next_retry_at must be in the future")
        self.status = DeliveryStatus.RETRY_SCHEDULED
        self.next_retry_at = next_retry_at
        return self

    def mark_abandoned(self, reason: str | None = None) -> DeliveryRecord:
        """Enter ABANDONED (terminal): attempts exhausted or webhook cut off."""
        self._guard(DeliveryStatus.ABANDONED)
        self.status = DeliveryStatus.ABANDONED
        self.next_retry_at = None
        if reason:
            self.error_message = reason
        return self

    def mark_failed(self, reason: str) -> DeliveryRecord:
        """Enter FAILED (terminal): delivery can never succeed."""
        self._guard(DeliveryStatus.FAILED)
        self.status = DeliveryStatus.FAILED
        self.next_retry_at = None
        self.error_message = reason
        return self

    def defer(self, until: datetime) -> DeliveryRecord:
        """Push the due time back without consuming an attempt."""
        self._guard(self.status)
        self.next_retry_at = until
        return self

    def release_claim(self) -> DeliveryRecord:
        self.claimed_by = None
        self.claim_expires_at = None
        return self


class DeliveryOutcome(BaseModel):
    """Result of a single HTTP attempt.

    Attributes:
        success: True for a 2xx response.
        http_status: Response status, None if no response was received.
        response_body: Response body, truncated.
        duration_ms: Wall-clock duration of the attempt.
        error: Failure reason, None on success.
        error_code: Classification of the failure (transient or permanent).
        signature: Signature header value sent with the attempt.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    success: bool
    http_status: int | None = None
    response_body: str | None = None
    duration_ms: int = Field(default=0, ge=0)
    error: str | None = None
    error_code: str | None = None
    signature: str | None = None


class DeliveryAttempt(BaseModel):
    """Append-only history entry for one attempt of a delivery."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: generate_id("att"))
    delivery_id: str
    attempt: int = Field(ge=1)
    attempted_at: datetime
    success: bool
    response_status: int | None = None
    response_time_ms: int | None = None
    error_message: str | None = None
    error_code: str | None = None

    @classmethod
    def from_outcome(
        cls, record: DeliveryRecord, outcome: DeliveryOutcome, attempted_at: datetime
    ) -> DeliveryAttempt:
        return cls(
            delivery_id=record.id,
            attempt=record.attempts,
            attempted_at=attempted_at,
            success=outcome.success,
            response_status=outcome.http_status,
            response_time_ms=outcome.duration_ms,
            error_message=outcome.error,
            error_code=outcome.error_code,
        )


class DeliveryStats(BaseModel):
    """Aggregate delivery statistics for a webhook."""

    model_config = ConfigDict(extra="forbid")

    webhook_id: str
    total: int = 0
    by_status: dict[DeliveryStatus, int] = Field(default_factory=dict)
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None

    @property
    def success_rate(self) -> float | None:
        """Delivered share of terminal records, None before any finished."""
        delivered = self.by_status.get(DeliveryStatus.DELIVERED, 0)
        finished = sum(self.by_status.get(s, 0) for s in TERMINAL_STATUSES)
        if finished == 0:
            return None
        return delivered / finished


__all__ = [
    "TERMINAL_STATUSES",
    "WAITING_STATUSES",
    "DeliveryAttempt",
    "DeliveryOutcome",
    "DeliveryRecord",
    "DeliveryStats",
    "DeliveryStatus",
]
