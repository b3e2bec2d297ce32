"""Service layer models for hookrelay.

Contains Pydantic models returned by WebhookService:
- Page: one page of a paginated listing
- TestDeliveryResult: outcome of a manual test delivery
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    """One page of results.

    Attributes:
        items: Results on this page.
        total: Results across all pages.
        page: 1-based page number.
        limit: Page size.
    """

    model_config = ConfigDict(extra="forbid")

    items: list[T]
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    limit: int = Field(ge=1)

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit

    @property
    def has_next(self) -> bool:
        return self.page < self.pages


class TestDeliveryResult(BaseModel):
    """Outcome of a manual test delivery.

    Attributes:
        delivery_id: The one-attempt delivery record created for the test.
        event_id: Synthetic event ID sent to the receiver.
        success: True if the endpoint answered 2xx.
        message: Human-readable summary.
        response_status: HTTP status, None if no response was received.
        response_time_ms: Duration of the attempt.
        error: Failure reason.
        reactivated: True if the success brought a suspended webhook back.
    """

    # Not a test case, despite the name
    __test__ = False

    model_config = ConfigDict(extra="forbid")

    delivery_id: str
    event_id: str
    success: bool
    message: str
    response_status: int | None = None
    response_time_ms: int | None = None
    error: str | None = None
    reactivated: bool = False


__all__ = ["Page", "TestDeliveryResult"]
