"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

# Add tests directory to path so helpers can be imported
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from helpers import FakeClock, make_event, make_webhook  # noqa: E402

from hookrelay.config import Settings  # noqa: E402
from hookrelay.models import Event, Webhook  # noqa: E402
from hookrelay.storage import InMemoryStore, SQLStore  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None, env="test")


@pytest.fixture
def clock() -> FakeClock:
    """Controllable clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    """Empty in-memory store."""
    return InMemoryStore()


@pytest_asyncio.fixture
async def sql_store() -> AsyncIterator[SQLStore]:
    """SQL store on a private in-memory SQLite database."""
    store = SQLStore("sqlite+aiosqlite://")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def sample_webhook() -> Webhook:
    """Webhook subscribed to all user events."""
    return make_webhook()


@pytest.fixture
def sample_event() -> Event:
    """A user.created event."""
    return make_event()
