"""Retry utilities for storage operations.

Provides exponential backoff retry logic for transient database errors
(dropped connections, pool timeouts, locked SQLite files). Once the
retries are exhausted the error surfaces as StoreUnavailable so workers
can back off without knowing which database is behind the store.
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from hookrelay.exceptions import StoreUnavailable
from hookrelay.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def _is_retryable_db_error(exc: BaseException) -> bool:
    """Check if a database error is transient and worth retrying.

    Connection-level failures are retried. Integrity errors, programming
    errors and anything raised by our own code are not.
    """
    if isinstance(exc, (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (ConnectionError, TimeoutError))


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts with context."""
    logger.warning(
        "Retrying store operation",
        attempt=retry_state.attempt_number,
        fn_name=retry_state.fn.__name__ if retry_state.fn else "unknown",
        error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
    )


# Decorator for retrying transient database errors
store_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    retry=retry_if_exception(_is_retryable_db_error),
    before_sleep=_log_retry,
    reraise=True,
)


def store_operation(fn: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
    """Retry ``fn`` on transient errors, then raise StoreUnavailable.

    Example:
        ```python
        class DeliveryMixin:
            @store_operation
            async def get_delivery(self, delivery_id: str) -> DeliveryRecord | None:
                ...
        ```
    """
    retrying = store_retry(fn)

    @functools.wraps(fn)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        try:
            return await retrying(*args, **kwargs)
        except (SQLAlchemyError, ConnectionError, TimeoutError) as e:
            if not _is_retryable_db_error(e):
                raise
            logger.warning("Store unavailable", fn_name=fn.__name__, error=str(e))
            raise StoreUnavailable(f"{fn.__name__} failed: {e}") from e

    return wrapper


__all__ = ["store_operation", "store_retry"]
