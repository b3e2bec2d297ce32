"""SQLAlchemy table definitions for the relational store.

Three tables:
- webhooks: subscriptions and their failure counters
- webhook_deliveries: delivery records (unique dedupe_key)
- webhook_delivery_attempts: append-only attempt history
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from hookrelay.models import (
    DeliveryAttempt,
    DeliveryRecord,
    DeliveryStatus,
    Webhook,
    WebhookStatus,
    ensure_utc,
)


class Base(DeclarativeBase):
    """Base class for all hookrelay tables."""

    pass


class WebhookRow(Base):
    __tablename__ = "webhooks"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    headers: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_failure_reason: Mapped[str | None] = mapped_column(Text)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rate_limit: Mapped[int | None] = mapped_column(Integer)
    timeout: Mapped[int] = mapped_column(Integer, nullable=False)
    retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @classmethod
    def from_model(cls, webhook: Webhook) -> WebhookRow:
        row = cls(id=webhook.id)
        row.update_from(webhook)
        return row

    def update_from(self, webhook: Webhook) -> None:
        self.user_id = webhook.user_id
        self.url = str(webhook.url)
        self.events = list(webhook.events)
        self.secret = webhook.secret
        self.headers = dict(webhook.headers)
        self.description = webhook.description
        self.status = webhook.status.value
        self.failure_count = webhook.failure_count
        self.consecutive_failures = webhook.consecutive_failures
        self.last_failure_at = webhook.last_failure_at
        self.last_failure_reason = webhook.last_failure_reason
        self.success_count = webhook.success_count
        self.last_success_at = webhook.last_success_at
        self.rate_limit = webhook.rate_limit
        self.timeout = webhook.timeout
        self.retry_attempts = webhook.retry_attempts
        self.tags = list(webhook.tags)
        self.metadata_ = dict(webhook.metadata)
        self.created_at = webhook.created_at
        self.updated_at = webhook.updated_at

    def to_model(self) -> Webhook:
        return Webhook(
            id=self.id,
            user_id=self.user_id,
            url=self.url,
            events=list(self.events),
            secret=self.secret,
            headers=dict(self.headers or {}),
            description=self.description,
            status=WebhookStatus(self.status),
            failure_count=self.failure_count,
            consecutive_failures=self.consecutive_failures,
            last_failure_at=ensure_utc(self.last_failure_at),
            last_failure_reason=self.last_failure_reason,
            success_count=self.success_count,
            last_success_at=ensure_utc(self.last_success_at),
            rate_limit=self.rate_limit,
            timeout=self.timeout,
            retry_attempts=self.retry_attempts,
            tags=list(self.tags or []),
            metadata=dict(self.metadata_ or {}),
            created_at=ensure_utc(self.created_at),
            updated_at=ensure_utc(self.updated_at),
        )


class DeliveryRow(Base):
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_due", "status", "next_retry_at"),
        Index("ix_webhook_deliveries_webhook_created", "webhook_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    # No foreign key: history outlives a deleted webhook
    webhook_id: Mapped[str] = mapped_column(String(32), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    event_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    signature: Mapped[str | None] = mapped_column(String(80))
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    retry_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    retry_multiplier: Mapped[float] = mapped_column(Float, nullable=False)
    response_status: Mapped[int | None] = mapped_column(Integer)
    response_body: Mapped[str | None] = mapped_column(Text)
    response_time_ms: Mapped[int | None] = mapped_column(Integer)
    error_message: Mapped[str | None] = mapped_column(Text)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    claimed_by: Mapped[str | None] = mapped_column(String(255))
    claim_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    redelivery_of: Mapped[str | None] = mapped_column(String(32))
    dedupe_key: Mapped[str | None] = mapped_column(String(300), unique=True)

    @classmethod
    def from_model(cls, record: DeliveryRecord) -> DeliveryRow:
        row = cls(id=record.id)
        row.update_from(record)
        return row

    def update_from(self, record: DeliveryRecord) -> None:
        self.webhook_id = record.webhook_id
        self.event_id = record.event_id
        self.event_type = record.event_type
        self.event_timestamp = record.event_timestamp
        self.payload = record.payload
        self.signature = record.signature
        self.status = record.status.value
        self.attempts = record.attempts
        self.max_attempts = record.max_attempts
        self.retry_delay_ms = record.retry_delay_ms
        self.retry_multiplier = record.retry_multiplier
        self.response_status = record.response_status
        self.response_body = record.response_body
        self.response_time_ms = record.response_time_ms
        self.error_message = record.error_message
        self.next_retry_at = record.next_retry_at
        self.last_attempt_at = record.last_attempt_at
        self.created_at = record.created_at
        self.delivered_at = record.delivered_at
        self.claimed_by = record.claimed_by
        self.claim_expires_at = record.claim_expires_at
        self.redelivery_of = record.redelivery_of
        self.dedupe_key = record.dedupe_key

    def to_model(self) -> DeliveryRecord:
        return DeliveryRecord(
            id=self.id,
            webhook_id=self.webhook_id,
            event_id=self.event_id,
            event_type=self.event_type,
            event_timestamp=ensure_utc(self.event_timestamp),
            payload=self.payload,
            signature=self.signature,
            status=DeliveryStatus(self.status),
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            retry_delay_ms=self.retry_delay_ms,
            retry_multiplier=self.retry_multiplier,
            response_status=self.response_status,
            response_body=self.response_body,
            response_time_ms=self.response_time_ms,
            error_message=self.error_message,
            next_retry_at=ensure_utc(self.next_retry_at),
            last_attempt_at=ensure_utc(self.last_attempt_at),
            created_at=ensure_utc(self.created_at),
            delivered_at=ensure_utc(self.delivered_at),
            claimed_by=self.claimed_by,
            claim_expires_at=ensure_utc(self.claim_expires_at),
            redelivery_of=self.redelivery_of,
            dedupe_key=self.dedupe_key,
        )


class AttemptRow(Base):
    __tablename__ = "webhook_delivery_attempts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    delivery_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("webhook_deliveries.id", ondelete="CASCADE"), index=True
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    response_status: Mapped[int | None] = mapped_column(Integer)
    response_time_ms: Mapped[int | None] = mapped_column(Integer)
    error_message: Mapped[str | None] = mapped_column(Text)
    error_code: Mapped[str | None] = mapped_column(String(64))

    @classmethod
    def from_model(cls, attempt: DeliveryAttempt) -> AttemptRow:
        return cls(
            id=attempt.id,
            delivery_id=attempt.delivery_id,
            attempt=attempt.attempt,
            attempted_at=attempt.attempted_at,
            success=attempt.success,
            response_status=attempt.response_status,
            response_time_ms=attempt.response_time_ms,
            error_message=attempt.error_message,
            error_code=attempt.error_code,
        )

    def to_model(self) -> DeliveryAttempt:
        return DeliveryAttempt(
            id=self.id,
            delivery_id=self.delivery_id,
            attempt=self.attempt,
            attempted_at=ensure_utc(self.attempted_at),
            success=self.success,
            response_status=self.response_status,
            response_time_ms=self.response_time_ms,
            error_message=self.error_message,
            error_code=self.error_code,
        )


__all__ = ["AttemptRow", "Base", "DeliveryRow", "WebhookRow"]
