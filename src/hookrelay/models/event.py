"""Domain events consumed from the event bus."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id, utc_now


class Event(BaseModel):
    """A platform event to be fanned out to subscribed webhooks.

    Attributes:
        id: Event identifier. Receivers dedupe deliveries on it.
        type: Event type, e.g. ``user.created``.
        payload: Opaque event data, never interpreted by the engine.
        timestamp: When the event occurred.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: generate_id("evt"), min_length=1)
    type: str = Field(min_length=1, description="Event type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Opaque event data")
    timestamp: datetime = Field(default_factory=utc_now, description="When the event occurred")

    @classmethod
    def from_message(cls, message: dict[str, Any], routing_key: str | None = None) -> Event:
        """Build an event from a bus message.

        Accepts both the documented shape (``eventId``, ``type``,
        ``payload``, ``timestamp``) and the legacy producer shape (``id``,
        ``event``, ``data``). A message without a type falls back to the
        routing key it was published with; a message without any data
        block is itself the payload.

        Raises:
            ValueError: If no event type can be determined.
        """
        event_id = message.get("eventId") or message.get("id")
        event_type = message.get("type") or message.get("event") or routing_key
        if not event_type:
            raise ValueError("bus message has no event type")

        if "payload" in message:
            payload = message["payload"]
        elif "data" in message:
            payload = message["data"]
        else:
            payload = dict(message)

        fields: dict[str, Any] = {"type": event_type, "payload": payload or {}}
        if event_id:
            fields["id"] = str(event_id)
        if message.get("timestamp"):
            fields["timestamp"] = message["timestamp"]
        return cls(**fields)


__all__ = ["Event"]
