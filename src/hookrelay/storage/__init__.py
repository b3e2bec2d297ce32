"""Storage backends for hookrelay.

The store is the source of truth for webhooks, delivery records and the
attempt history.

Example:
    ```python
    from hookrelay.storage import SQLStore

    async with SQLStore() as store:
        await store.create_webhook(webhook)
        record = await store.claim_delivery(delivery_id, "worker-1", now, lease)
    ```
"""

from .base import DeliveryStore, is_claimable
from .client import SQLStore
from .memory import InMemoryStore
from .retry import store_operation, store_retry

__all__ = [
    "DeliveryStore",
    "InMemoryStore",
    "SQLStore",
    "is_claimable",
    "store_operation",
    "store_retry",
]
