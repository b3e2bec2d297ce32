"""Tests for store retry handling."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from hookrelay.exceptions import StoreUnavailable
from hookrelay.storage import store_operation
from hookrelay.storage.retry import _is_retryable_db_error


def operational_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("database is locked"))


class TestRetryableErrors:
    """Tests for error classification."""

    def test_connection_errors_retryable(self) -> None:
        """Operational and connection errors should be retried."""
        assert _is_retryable_db_error(operational_error())
        assert _is_retryable_db_error(ConnectionError("reset"))
        assert _is_retryable_db_error(TimeoutError())

    def test_other_errors_not_retryable(self) -> None:
        """Integrity and programming errors should not be retried."""
        assert not _is_retryable_db_error(IntegrityError("INSERT", {}, Exception("unique")))
        assert not _is_retryable_db_error(ValueError("bad"))


class Flaky:
    """Async callable failing with the given errors before returning a value."""

    def __init__(self, *errors: Exception, result: object = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def decorate(flaky: Flaky, name: str) -> Callable[[], Awaitable[object]]:
    async def operation() -> object:
        return await flaky()

    operation.__name__ = name
    return store_operation(operation)


class TestStoreOperation:
    """Tests for the store_operation decorator."""

    @pytest.mark.asyncio
    async def test_success_passes_through(self) -> None:
        """A working call should run once and return its value."""
        flaky = Flaky(result=42)

        assert await decorate(flaky, "get_thing")() == 42
        assert flaky.calls == 1

    @pytest.mark.asyncio
    async def test_transient_error_retried(self) -> None:
        """A transient failure followed by success should succeed."""
        flaky = Flaky(operational_error())

        assert await decorate(flaky, "get_thing")() == "ok"
        assert flaky.calls == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_store_unavailable(self) -> None:
        """Persistent transient failures should surface as StoreUnavailable."""
        flaky = Flaky(*(operational_error() for _ in range(5)))

        with pytest.raises(StoreUnavailable, match="claim_delivery failed"):
            await decorate(flaky, "claim_delivery")()
        assert flaky.calls == 3

    @pytest.mark.asyncio
    async def test_permanent_error_not_wrapped(self) -> None:
        """Non-transient errors should propagate untouched on the first try."""
        flaky = Flaky(IntegrityError("INSERT", {}, Exception("unique")))

        with pytest.raises(IntegrityError):
            await decorate(flaky, "create_delivery")()
        assert flaky.calls == 1
