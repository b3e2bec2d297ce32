"""hookrelay service layer.

Provides the WebhookService used by the admin/API surface.

Example:
    ```python
    from hookrelay.service import WebhookService

    service = WebhookService(store=store, registry=registry, executor=executor)
    page = await service.list_webhooks("user_123", page=1, limit=20)
    ```
"""

from .base import WebhookService
from .deliveries import TEST_EVENT_TYPE
from .models import Page, TestDeliveryResult
from .subscriptions import MAX_PAGE_SIZE

__all__ = [
    "MAX_PAGE_SIZE",
    "TEST_EVENT_TYPE",
    "Page",
    "TestDeliveryResult",
    "WebhookService",
]
