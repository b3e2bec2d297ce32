"""Shared helpers for hookrelay models."""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4


def generate_id(prefix: str) -> str:
    """Generate a unique ID with the given prefix.

    Examples:
        generate_id("whk") -> "whk_a1b2c3d4e5f6a7b8"
        generate_id("dlv") -> "dlv_a1b2c3d4e5f6a7b8"
    """
    return f"{prefix}_{uuid4().hex[:16]}"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
