"""Subscription management mixin for WebhookService.

Provides create, read, update, delete, reactivate and disable for
webhooks. Reads return WebhookView, which masks the secret and sensitive
headers; only create_webhook returns the secret, once.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pydantic

from hookrelay.delivery.registry import CONFIG_FIELDS
from hookrelay.delivery.signing import generate_secret
from hookrelay.exceptions import (
    ConfigurationError,
    NotFoundError,
    ValidationError,
    WebhookLimitError,
)
from hookrelay.logging import get_logger
from hookrelay.models import Webhook, WebhookStatus, WebhookView

from .models import Page

if TYPE_CHECKING:
    from hookrelay.config import Settings
    from hookrelay.delivery import WebhookRegistry
    from hookrelay.storage import DeliveryStore

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100

# Fields an owner may change after creation
UPDATABLE_FIELDS = CONFIG_FIELDS | {"status"}


def validate_page(page: int, limit: int) -> int:
    """Check pagination arguments and return the offset."""
    if page < 1:
        raise ValidationError("page", "must be >= 1")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError("limit", f"must be between 1 and {MAX_PAGE_SIZE}")
    return (page - 1) * limit


def _configuration_error(error: pydantic.ValidationError) -> ConfigurationError:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first["loc"]) or "webhook"
    return ConfigurationError(f"Invalid webhook {field}: {first['msg']}")


class SubscriptionMixin:
    """Mixin providing webhook CRUD.

    Expects these attributes from the base class:
    - store: DeliveryStore
    - registry: WebhookRegistry
    - settings: Settings
    """

    store: DeliveryStore
    registry: WebhookRegistry
    settings: Settings

    async def _require_webhook(self, webhook_id: str, user_id: str) -> Webhook:
        webhook = await self.store.get_webhook(webhook_id, user_id=user_id)
        if webhook is None:
            raise NotFoundError("webhook", webhook_id)
        return webhook

    async def create_webhook(
        self,
        user_id: str,
        url: str,
        events: list[str],
        description: str | None = None,
        headers: dict[str, str] | None = None,
        timeout: int | None = None,
        retry_attempts: int | None = None,
        rate_limit: int | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Webhook:
        """Register a webhook with a freshly generated secret.

        Args:
            user_id: Owner of the webhook.
            url: http(s) endpoint receiving deliveries.
            events: Event type patterns, e.g. ``["user.created", "order.*"]``.
            description: Human-readable description.
            headers: Custom headers sent with every delivery.
            timeout: Request timeout in ms (default from settings).
            retry_attempts: Attempts per delivery (default from settings).
            rate_limit: Deliveries per minute, None for the global limit.
            tags: Free-form labels.
            metadata: Free-form metadata.

        Returns:
            The stored webhook, including its secret. Show it to the owner
            once; later reads mask it.

        Raises:
            WebhookLimitError: If the user already has the maximum number of webhooks.
            ConfigurationError: If the URL or event patterns are invalid.
        """
        count = await self.store.count_webhooks(user_id=user_id)
        limit = self.settings.max_webhooks_per_user
        if count >= limit:
            raise WebhookLimitError(user_id, limit)

        try:
            webhook = Webhook(
                user_id=user_id,
                url=url,
                events=events,
                secret=generate_secret(),
                headers=headers or {},
                description=description,
                timeout=timeout or self.settings.timeout_ms,
                retry_attempts=retry_attempts or self.settings.max_retry_attempts,
                rate_limit=rate_limit,
                tags=tags or [],
                metadata=metadata or {},
            )
        except pydantic.ValidationError as e:
            raise _configuration_error(e) from e

        await self.store.create_webhook(webhook)
        self.registry.invalidate()
        logger.info(
            "Webhook created", webhook_id=webhook.id, user_id=user_id, events=webhook.events
        )
        return webhook

    async def get_webhook(self, webhook_id: str, user_id: str) -> WebhookView:
        """Get a webhook with secrets masked.

        Raises:
            NotFoundError: If the user has no such webhook.
        """
        return WebhookView.from_webhook(await self._require_webhook(webhook_id, user_id))

    async def list_webhooks(
        self,
        user_id: str,
        status: WebhookStatus | None = None,
        event_type: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[WebhookView]:
        """List a user's webhooks, newest first.

        Args:
            user_id: Owner.
            status: Only webhooks in this status.
            event_type: Only webhooks with a pattern matching this event type.
            page: 1-based page number.
            limit: Page size (max 100).
        """
        offset = validate_page(page, limit)
        webhooks = await self.store.list_webhooks(
            user_id=user_id, status=status, event_type=event_type, offset=offset, limit=limit
        )
        total = await self.store.count_webhooks(
            user_id=user_id, status=status, event_type=event_type
        )
        return Page[WebhookView](
            items=[WebhookView.from_webhook(w) for w in webhooks],
            total=total,
            page=page,
            limit=limit,
        )

    async def update_webhook(self, webhook_id: str, user_id: str, **changes: Any) -> WebhookView:
        """Change a webhook's configuration.

        Setting ``status`` to ACTIVE reactivates the webhook and setting it
        to DISABLED disables it. SUSPENDED can only be set by the circuit
        breaker.

        Raises:
            NotFoundError: If the user has no such webhook.
            ValidationError: For unknown fields or an unsupported status.
            ConfigurationError: If the new values are invalid.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(sorted(unknown)[0], "cannot be updated")

        webhook = await self._require_webhook(webhook_id, user_id)
        status = changes.pop("status", None)
        if status is not None:
            try:
                status = WebhookStatus(status)
            except ValueError as e:
                raise ValidationError("status", f"unknown status {status!r}") from e
            if status == WebhookStatus.SUSPENDED:
                raise ValidationError("status", "SUSPENDED is set by the circuit breaker only")

        if changes:
            try:
                webhook = await self.registry.update_config(webhook_id, changes)
            except pydantic.ValidationError as e:
                raise _configuration_error(e) from e

        if status == WebhookStatus.ACTIVE and webhook.status != WebhookStatus.ACTIVE:
            webhook = await self.registry.reactivate(webhook_id)
        elif status == WebhookStatus.DISABLED and webhook.status != WebhookStatus.DISABLED:
            webhook = await self.registry.disable(webhook_id)

        return WebhookView.from_webhook(webhook)

    async def delete_webhook(self, webhook_id: str, user_id: str) -> None:
        """Delete a webhook. Its waiting deliveries end up FAILED.

        Raises:
            NotFoundError: If the user has no such webhook.
        """
        if not await self.store.delete_webhook(webhook_id, user_id=user_id):
            raise NotFoundError("webhook", webhook_id)
        self.registry.invalidate(webhook_id)
        logger.info("Webhook deleted", webhook_id=webhook_id, user_id=user_id)

    async def reactivate_webhook(self, webhook_id: str, user_id: str) -> WebhookView:
        """Bring a suspended or disabled webhook back to ACTIVE.

        Raises:
            NotFoundError: If the user has no such webhook.
        """
        await self._require_webhook(webhook_id, user_id)
        return WebhookView.from_webhook(await self.registry.reactivate(webhook_id))

    async def disable_webhook(self, webhook_id: str, user_id: str) -> WebhookView:
        """Turn a webhook off and abandon its waiting deliveries.

        Raises:
            NotFoundError: If the user has no such webhook.
        """
        await self._require_webhook(webhook_id, user_id)
        return WebhookView.from_webhook(await self.registry.disable(webhook_id))


__all__ = ["MAX_PAGE_SIZE", "SubscriptionMixin", "validate_page"]
