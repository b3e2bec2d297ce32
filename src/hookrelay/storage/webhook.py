"""Webhook storage operations for the SQL store.

Provides methods to store, retrieve, and manage webhook subscriptions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from hookrelay.exceptions import NotFoundError

from .base import webhook_matches
from .retry import store_operation
from .tables import WebhookRow

if TYPE_CHECKING:
    from hookrelay.models import Webhook, WebhookStatus


class WebhookMixin:
    """Mixin providing webhook operations for SQLStore.

    This mixin expects the following attributes from the base class:
    - sessions: async_sessionmaker[AsyncSession]
    """

    sessions: Any

    @store_operation
    async def create_webhook(self, webhook: Webhook) -> str:
        """Store a webhook configuration.

        Args:
            webhook: Webhook to store.

        Returns:
            The webhook ID.
        """
        async with self.sessions() as session, session.begin():
            session.add(WebhookRow.from_model(webhook))
        return webhook.id

    @store_operation
    async def get_webhook(self, webhook_id: str, user_id: str | None = None) -> Webhook | None:
        """Get a webhook by ID.

        Args:
            webhook_id: ID of the webhook.
            user_id: Owner filter, None for engine-internal lookups.

        Returns:
            Webhook if found, None otherwise.
        """
        async with self.sessions() as session:
            row = await session.get(WebhookRow, webhook_id)
        if row is None or (user_id is not None and row.user_id != user_id):
            return None
        return row.to_model()

    @staticmethod
    def _webhook_filters(user_id: str | None, status: WebhookStatus | None) -> list[Any]:
        filters: list[Any] = []
        if user_id is not None:
            filters.append(WebhookRow.user_id == user_id)
        if status is not None:
            filters.append(WebhookRow.status == status.value)
        return filters

    @store_operation
    async def list_webhooks(
        self,
        user_id: str | None = None,
        status: WebhookStatus | None = None,
        event_type: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Webhook]:
        """List webhooks, newest first.

        Pattern matching against ``event_type`` happens after loading,
        since wildcard patterns are stored as JSON.
        """
        query = (
            select(WebhookRow)
            .where(*self._webhook_filters(user_id, status))
            .order_by(WebhookRow.created_at.desc(), WebhookRow.id)
        )
        if event_type is None:
            query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)

        async with self.sessions() as session:
            rows = (await session.scalars(query)).all()
        webhooks = [row.to_model() for row in rows]

        if event_type is None:
            return webhooks
        matched = [w for w in webhooks if webhook_matches(w, event_type=event_type)]
        end = None if limit is None else offset + limit
        return matched[offset:end]

    @store_operation
    async def count_webhooks(
        self,
        user_id: str | None = None,
        status: WebhookStatus | None = None,
        event_type: str | None = None,
    ) -> int:
        """Count webhooks matching the filters."""
        if event_type is not None:
            webhooks = await self.list_webhooks(user_id, status, event_type)
            return len(webhooks)

        query = (
            select(func.count())
            .select_from(WebhookRow)
            .where(*self._webhook_filters(user_id, status))
        )
        async with self.sessions() as session:
            return int(await session.scalar(query) or 0)

    @store_operation
    async def save_webhook(self, webhook: Webhook) -> None:
        """Overwrite a stored webhook.

        Raises:
            NotFoundError: If the webhook does not exist.
        """
        async with self.sessions() as session, session.begin():
            row = await session.get(WebhookRow, webhook.id)
            if row is None:
                raise NotFoundError("webhook", webhook.id)
            row.update_from(webhook)

    @store_operation
    async def delete_webhook(self, webhook_id: str, user_id: str | None = None) -> bool:
        """Delete a webhook. Delivery records are kept for auditing.

        Returns:
            True if deleted, False if not found.
        """
        async with self.sessions() as session, session.begin():
            row = await session.get(WebhookRow, webhook_id)
            if row is None or (user_id is not None and row.user_id != user_id):
                return False
            await session.delete(row)
        return True


__all__ = ["WebhookMixin"]
