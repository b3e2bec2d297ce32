"""SQL storage client for hookrelay.

This module provides the SQLStore class that combines all relational
storage operations through mixins.

Example:
    ```python
    from hookrelay.storage import SQLStore

    async with SQLStore("postgresql+asyncpg://localhost/hooks") as store:
        await store.create_webhook(webhook)
        due = await store.list_due(utc_now(), limit=100)
    ```
"""

from __future__ import annotations

from .base import DeliveryStore
from .delivery import DeliveryMixin
from .session import SQLStorageBase
from .webhook import WebhookMixin


class SQLStore(WebhookMixin, DeliveryMixin, SQLStorageBase, DeliveryStore):
    """Async SQLAlchemy store for webhooks, deliveries and attempt history.

    Works with any async SQLAlchemy driver; tested against SQLite
    (aiosqlite) and intended for PostgreSQL (asyncpg) in production.

    This class combines functionality from multiple mixins:
    - WebhookMixin: create_webhook, get_webhook, list_webhooks, save_webhook, ...
    - DeliveryMixin: create_delivery, claim_delivery, list_due, append_attempt, ...
    - SQLStorageBase: engine lifecycle and table creation

    Every operation retries transient database errors and raises
    StoreUnavailable once the retries are exhausted.
    """


__all__ = ["SQLStore"]
