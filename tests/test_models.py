"""Unit tests for hookrelay models."""

from datetime import timedelta

import pytest
from helpers import START, make_record, make_webhook
from pydantic import ValidationError

from hookrelay.exceptions import InvalidTransitionError
from hookrelay.models import (
    MASK,
    DeliveryOutcome,
    DeliveryStats,
    DeliveryStatus,
    Event,
    Webhook,
    WebhookStatus,
    WebhookView,
    ensure_utc,
    generate_id,
    mask_headers,
    matches_event,
)


class TestGenerateId:
    """Tests for the generate_id function."""

    def test_generates_unique_ids(self):
        """Each call should produce a unique ID."""
        ids = [generate_id("dlv") for _ in range(100)]
        assert len(ids) == len(set(ids))

    def test_consistent_format(self):
        """ID should be prefix_16chars."""
        prefix, suffix = generate_id("whk").split("_")
        assert prefix == "whk"
        assert len(suffix) == 16

    def test_ensure_utc(self):
        """Naive datetimes should be read as UTC."""
        naive = START.replace(tzinfo=None)
        assert ensure_utc(naive) == START
        assert ensure_utc(None) is None


class TestMatchesEvent:
    """Tests for subscription pattern matching."""

    @pytest.mark.parametrize(
        ("pattern", "event_type", "expected"),
        [
            ("user.created", "user.created", True),
            ("user.created", "user.deleted", False),
            ("user.*", "user.created", True),
            ("user.*", "order.created", False),
            ("*", "anything.at_all", True),
            ("User.*", "user.created", False),
        ],
    )
    def test_patterns(self, pattern, event_type, expected):
        """Exact names and wildcards should match case-sensitively."""
        assert matches_event(pattern, event_type) is expected


class TestWebhook:
    """Tests for the Webhook model."""

    def test_defaults(self):
        """New webhooks start active with clean counters."""
        webhook = make_webhook()
        assert webhook.id.startswith("whk_")
        assert webhook.status == WebhookStatus.ACTIVE
        assert webhook.is_active
        assert webhook.failure_count == 0
        assert webhook.timeout == 10000

    def test_events_required(self):
        """At least one non-empty pattern is required."""
        with pytest.raises(ValidationError):
            make_webhook(events=[])
        with pytest.raises(ValidationError):
            make_webhook(events=["user.*", "  "])

    def test_events_deduplicated(self):
        """Duplicate patterns should collapse, keeping order."""
        webhook = make_webhook(events=["b", "a", "b"])
        assert webhook.events == ["b", "a"]

    def test_url_scheme(self):
        """Only http and https URLs are accepted."""
        with pytest.raises(ValidationError):
            make_webhook(url="ftp://example.com/hooks")
        with pytest.raises(ValidationError):
            make_webhook(url="not a url")

    def test_bounds(self):
        """Timeout, retry attempts and rate limit are bounded."""
        with pytest.raises(ValidationError):
            make_webhook(timeout=999)
        with pytest.raises(ValidationError):
            make_webhook(retry_attempts=11)
        with pytest.raises(ValidationError):
            make_webhook(rate_limit=0)

    def test_extra_fields_rejected(self):
        """Unknown fields should be rejected."""
        with pytest.raises(ValidationError):
            Webhook(
                user_id="user_1",
                url="https://example.com",
                events=["*"],
                secret="s",
                colour="blue",
            )

    def test_subscribes_to_requires_active(self):
        """Suspended webhooks should not subscribe to anything."""
        webhook = make_webhook(events=["user.*"])
        assert webhook.subscribes_to("user.created")
        webhook.status = WebhookStatus.SUSPENDED
        assert not webhook.subscribes_to("user.created")

    def test_record_failure_trips_at_threshold(self):
        """The threshold-th consecutive failure should suspend the webhook."""
        webhook = make_webhook()
        assert not webhook.record_failure("HTTP 500", threshold=3, at=START)
        assert not webhook.record_failure("HTTP 500", threshold=3, at=START)
        assert webhook.record_failure("Request timeout", threshold=3, at=START)

        assert webhook.status == WebhookStatus.SUSPENDED
        assert webhook.failure_count == 3
        assert webhook.last_failure_reason == "Request timeout"
        # Already suspended: no second trip
        assert not webhook.record_failure("HTTP 500", threshold=3)

    def test_record_success_resets_streak(self):
        """A success should clear consecutive failures only."""
        webhook = make_webhook()
        webhook.record_failure("HTTP 500", threshold=10)
        webhook.record_success(at=START)

        assert webhook.consecutive_failures == 0
        assert webhook.failure_count == 1
        assert webhook.success_count == 1
        assert webhook.last_success_at == START

    def test_reactivate(self):
        """reactivate should restore ACTIVE with a clean streak."""
        webhook = make_webhook()
        webhook.record_failure("HTTP 500", threshold=1)
        webhook.reactivate()
        assert webhook.is_active
        assert webhook.consecutive_failures == 0


class TestWebhookView:
    """Tests for masked webhook views."""

    def test_secret_masked(self):
        """The secret should never appear in a view."""
        webhook = make_webhook(headers={"X-Api-Key": "k", "X-Tenant": "acme"})
        view = WebhookView.from_webhook(webhook)

        assert view.secret == MASK
        assert webhook.secret not in view.model_dump_json()
        assert view.headers == {"X-Api-Key": MASK, "X-Tenant": "acme"}
        assert view.url == "https://example.com/hooks"

    def test_mask_headers(self):
        """Header names mentioning credentials should be masked."""
        masked = mask_headers(
            {"Authorization": "Bearer x", "X-Auth-Token": "t", "Accept": "json"}
        )
        assert masked == {"Authorization": MASK, "X-Auth-Token": MASK, "Accept": "json"}


class TestDeliveryRecord:
    """Tests for DeliveryRecord transitions."""

    def test_attempt_budget_enforced(self):
        """attempts can never exceed max_attempts."""
        with pytest.raises(ValidationError):
            make_record(make_webhook(), attempts=4, max_attempts=3)

        record = make_record(make_webhook(), max_attempts=1)
        record.mark_delivering(START)
        with pytest.raises(ValidationError):
            record.mark_delivering(START)

    def test_mark_delivering_consumes_attempt(self):
        """Entering DELIVERING should count an attempt and clear the due time."""
        record = make_record(make_webhook())
        record.mark_delivering(START)

        assert record.status == DeliveryStatus.DELIVERING
        assert record.attempts == 1
        assert record.attempts_remaining == 2
        assert record.last_attempt_at == START
        assert record.next_retry_at is None

    def test_retry_must_be_in_future(self):
        """A retry cannot be scheduled at or before now."""
        record = make_record(make_webhook())
        record.mark_delivering(START)

        with pytest.raises(ValueError, match="future"):
            record.mark_retry_scheduled(START, START)

        record.mark_retry_scheduled(START + timedelta(seconds=1), START)
        assert record.status == DeliveryStatus.RETRY_SCHEDULED

    def test_delivered_clears_error(self):
        """DELIVERED should record the time and drop the last error."""
        record = make_record(make_webhook(), error_message="HTTP 503")
        record.mark_delivering(START)
        record.mark_delivered(START + timedelta(seconds=1))

        assert record.is_terminal
        assert record.delivered_at == START + timedelta(seconds=1)
        assert record.error_message is None

    @pytest.mark.parametrize(
        "status", [DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.ABANDONED]
    )
    def test_terminal_states_are_final(self, status):
        """No transition may leave a terminal state."""
        record = make_record(make_webhook(), status=status)

        with pytest.raises(InvalidTransitionError):
            record.mark_delivering(START)
        with pytest.raises(InvalidTransitionError):
            record.mark_abandoned("again")
        with pytest.raises(InvalidTransitionError):
            record.defer(START)

    def test_apply_outcome(self):
        """Response details should be copied from the outcome."""
        record = make_record(make_webhook())
        record.apply_outcome(
            DeliveryOutcome(
                success=False,
                http_status=503,
                response_body="busy",
                duration_ms=12,
                error="HTTP 503: Service Unavailable",
            )
        )
        assert record.response_status == 503
        assert record.response_body == "busy"
        assert record.response_time_ms == 12
        assert record.error_message == "HTTP 503: Service Unavailable"


class TestEvent:
    """Tests for building events from bus messages."""

    def test_documented_shape(self):
        """eventId/type/payload/timestamp should map directly."""
        event = Event.from_message(
            {
                "eventId": "evt_1",
                "type": "user.created",
                "payload": {"user_id": "u_1"},
                "timestamp": "2025-01-01T12:00:00Z",
            }
        )
        assert event.id == "evt_1"
        assert event.type == "user.created"
        assert event.payload == {"user_id": "u_1"}
        assert event.timestamp == START

    def test_legacy_shape(self):
        """id/event/data should be accepted."""
        event = Event.from_message({"id": 42, "event": "order.paid", "data": {"total": 10}})
        assert event.id == "42"
        assert event.type == "order.paid"
        assert event.payload == {"total": 10}

    def test_routing_key_fallback(self):
        """A message without a type should use its routing key and be its own payload."""
        event = Event.from_message({"user_id": "u_1"}, routing_key="user.created")
        assert event.type == "user.created"
        assert event.payload == {"user_id": "u_1"}
        assert event.id.startswith("evt_")

    def test_missing_type_rejected(self):
        """A message with no type and no routing key is malformed."""
        with pytest.raises(ValueError, match="no event type"):
            Event.from_message({"payload": {}})


class TestDeliveryStats:
    """Tests for DeliveryStats."""

    def test_success_rate(self):
        """Rate is delivered over finished records."""
        stats = DeliveryStats(
            webhook_id="whk_1",
            by_status={
                DeliveryStatus.DELIVERED: 3,
                DeliveryStatus.ABANDONED: 1,
                DeliveryStatus.PENDING: 5,
            },
        )
        assert stats.success_rate == 0.75

    def test_success_rate_without_finished(self):
        """No finished records means no rate."""
        stats = DeliveryStats(webhook_id="whk_1", by_status={DeliveryStatus.PENDING: 2})
        assert stats.success_rate is None
