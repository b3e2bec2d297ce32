"""Engine and session lifecycle for the SQL store."""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from hookrelay.config import settings
from hookrelay.logging import get_logger

from .tables import Base

logger = get_logger(__name__)


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith(":"))


class SQLStorageBase:
    """Base class for the SQL store with connection management.

    Provides:
    - Engine creation and disposal
    - Table creation on initialize
    - A session factory for the storage mixins
    """

    def __init__(self, database_url: str | None = None, echo: bool = False) -> None:
        """Initialize storage client.

        Args:
            database_url: SQLAlchemy async URL. Defaults to settings.database_url.
            echo: Log every SQL statement.
        """
        self._url = database_url or settings.database_url
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        """Get the database engine, raising if not initialized."""
        if self._engine is None:
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self._engine

    @property
    def sessions(self) -> async_sessionmaker[AsyncSession]:
        """Get the session factory, raising if not initialized."""
        if self._sessions is None:
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self._sessions

    async def initialize(self) -> None:
        """Create the engine and ensure tables exist."""
        kwargs: dict[str, Any] = {"echo": self._echo}
        if _is_memory_sqlite(self._url):
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        elif not self._url.startswith("sqlite"):
            kwargs["pool_pre_ping"] = True

        self._engine = create_async_engine(self._url, **kwargs)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("SQL store initialized", dialect=self._engine.dialect.name)

    async def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None


__all__ = ["SQLStorageBase"]
