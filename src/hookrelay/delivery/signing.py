"""HMAC-SHA256 request signing.

The signature covers ``"{timestamp}.{canonical_payload}"`` so receivers can
reject replays outside an acceptable clock skew. The canonical payload is
the exact request body and is computed once per delivery record; only the
timestamp (and therefore the signature) changes between attempts.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any

from hookrelay.models.base import ensure_utc

if TYPE_CHECKING:
    from hookrelay.models import DeliveryRecord, Event, Webhook

SIGNATURE_PREFIX = "sha256="

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"

# Headers the engine owns; custom webhook headers cannot override them
RESERVED_HEADERS = frozenset(
    {
        "content-type",
        SIGNATURE_HEADER.lower(),
        TIMESTAMP_HEADER.lower(),
        "x-webhook-id",
        "x-event-id",
        "x-event-type",
        "x-delivery-id",
        "x-delivery-attempt",
    }
)


def _format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. 2025-10-18T12:00:00.000Z."""
    value = ensure_utc(value)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def canonical_payload(event: Event) -> str:
    """Serialize an event into the canonical delivery envelope.

    Keys are sorted and separators fixed, so the same event always yields
    the same byte sequence.
    """
    envelope: dict[str, Any] = {
        "eventId": event.id,
        "type": event.type,
        "payload": event.payload,
        "timestamp": _format_timestamp(event.timestamp),
    }
    return json.dumps(
        envelope,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def sign(secret: str, payload: str, timestamp: int | str) -> str:
    """Compute the signature header value for a payload.

    Args:
        secret: Webhook secret.
        payload: Canonical payload (the request body).
        timestamp: Unix timestamp in seconds, sent alongside the signature.

    Returns:
        Signature in format "sha256=<hex_digest>".
    """
    message = f"{timestamp}.{payload}".encode()
    digest = hmac.new(key=secret.encode("utf-8"), msg=message, digestmod=hashlib.sha256)
    return f"{SIGNATURE_PREFIX}{digest.hexdigest()}"


def verify(
    secret: str,
    payload: str,
    timestamp: int | str,
    signature: str,
    tolerance_seconds: int | None = None,
    now: float | None = None,
) -> bool:
    """Verify a signature, optionally rejecting stale timestamps.

    Args:
        secret: Webhook secret.
        payload: Request body as received.
        timestamp: Value of the timestamp header.
        signature: Value of the signature header.
        tolerance_seconds: Maximum accepted clock skew, None to skip the check.
        now: Current Unix time (defaults to ``time.time()``).

    Returns:
        True if the signature matches and the timestamp is fresh enough.
    """
    if tolerance_seconds is not None:
        try:
            sent_at = int(timestamp)
        except (TypeError, ValueError):
            return False
        current = time.time() if now is None else now
        if abs(current - sent_at) > tolerance_seconds:
            return False

    expected = sign(secret, payload, timestamp)
    return hmac.compare_digest(expected, signature)


def generate_secret(nbytes: int = 32) -> str:
    """Generate a random webhook secret (hex, two characters per byte)."""
    return secrets.token_hex(nbytes)


def build_headers(
    record: DeliveryRecord,
    webhook: Webhook,
    timestamp: int,
    signature: str,
    user_agent: str,
) -> dict[str, str]:
    """Assemble the outbound headers for one attempt.

    Custom webhook headers are included, minus the ones the engine owns.
    A custom User-Agent replaces the default one.
    """
    headers: dict[str, str] = {}
    for name, value in webhook.headers.items():
        lowered = name.lower()
        if lowered == "user-agent":
            user_agent = value
        elif lowered not in RESERVED_HEADERS:
            headers[name] = value
    headers.update(
        {
            "Content-Type": "application/json",
            "User-Agent": user_agent,
            SIGNATURE_HEADER: signature,
            TIMESTAMP_HEADER: str(timestamp),
            "X-Webhook-ID": webhook.id,
            "X-Event-ID": record.event_id,
            "X-Event-Type": record.event_type,
            "X-Delivery-ID": record.id,
            "X-Delivery-Attempt": str(record.attempts),
        }
    )
    return headers
