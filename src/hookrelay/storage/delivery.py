"""Delivery record and attempt history operations for the SQL store.

Claims are a single conditional UPDATE: the row only changes hands if it is
still claimable when the statement runs, so two workers racing for the
same record cannot both win.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from hookrelay.exceptions import NotFoundError
from hookrelay.logging import get_logger
from hookrelay.models import TERMINAL_STATUSES, WAITING_STATUSES, DeliveryStatus, ensure_utc

from .retry import store_operation
from .tables import AttemptRow, DeliveryRow

if TYPE_CHECKING:
    from hookrelay.models import DeliveryAttempt, DeliveryRecord

logger = get_logger(__name__)

_WAITING = [s.value for s in WAITING_STATUSES]
_TERMINAL = [s.value for s in TERMINAL_STATUSES]


def _claim_free(now: datetime) -> Any:
    return or_(DeliveryRow.claim_expires_at.is_(None), DeliveryRow.claim_expires_at <= now)


def _claimable(now: datetime) -> Any:
    """SQL form of ``is_claimable``."""
    waiting = and_(
        DeliveryRow.status.in_(_WAITING),
        or_(DeliveryRow.next_retry_at.is_(None), DeliveryRow.next_retry_at <= now),
        _claim_free(now),
    )
    stale = and_(DeliveryRow.status == DeliveryStatus.DELIVERING.value, _claim_free(now))
    return or_(waiting, stale)


def _due_order() -> tuple[Any, ...]:
    due_at = func.coalesce(DeliveryRow.next_retry_at, DeliveryRow.created_at)
    return (due_at, DeliveryRow.created_at)


class DeliveryMixin:
    """Mixin providing delivery operations for SQLStore.

    This mixin expects the following attributes from the base class:
    - sessions: async_sessionmaker[AsyncSession]
    """

    sessions: Any

    @store_operation
    async def create_delivery(self, record: DeliveryRecord) -> bool:
        """Insert a delivery record.

        Returns:
            False if the dedupe key is already taken.
        """
        try:
            async with self.sessions() as session, session.begin():
                session.add(DeliveryRow.from_model(record))
        except IntegrityError:
            if record.dedupe_key is None:
                raise
            logger.debug("Duplicate delivery skipped", dedupe_key=record.dedupe_key)
            return False
        return True

    @store_operation
    async def get_delivery(self, delivery_id: str) -> DeliveryRecord | None:
        async with self.sessions() as session:
            row = await session.get(DeliveryRow, delivery_id)
        return row.to_model() if row else None

    @store_operation
    async def find_delivery(self, webhook_id: str, event_id: str) -> DeliveryRecord | None:
        query = select(DeliveryRow).where(DeliveryRow.dedupe_key == f"{webhook_id}:{event_id}")
        async with self.sessions() as session:
            row = await session.scalar(query)
        return row.to_model() if row else None

    @store_operation
    async def save_delivery(self, record: DeliveryRecord) -> None:
        async with self.sessions() as session, session.begin():
            row = await session.get(DeliveryRow, record.id)
            if row is None:
                raise NotFoundError("delivery", record.id)
            row.update_from(record)

    @store_operation
    async def claim_delivery(
        self,
        delivery_id: str,
        worker_id: str,
        now: datetime,
        lease: timedelta,
    ) -> DeliveryRecord | None:
        """Claim a record with a conditional UPDATE.

        Returns:
            The claimed record, or None if the UPDATE matched no row.
        """
        now = ensure_utc(now)
        statement = (
            update(DeliveryRow)
            .where(DeliveryRow.id == delivery_id, _claimable(now))
            .values(claimed_by=worker_id, claim_expires_at=now + lease)
            .execution_options(synchronize_session=False)
        )
        async with self.sessions() as session, session.begin():
            result = await session.execute(statement)
            if result.rowcount != 1:
                return None
            row = await session.get(DeliveryRow, delivery_id, populate_existing=True)
            return row.to_model() if row else None

    @store_operation
    async def list_due(self, now: datetime, limit: int = 100) -> list[DeliveryRecord]:
        query = select(DeliveryRow).where(_claimable(ensure_utc(now))).order_by(*_due_order())
        async with self.sessions() as session:
            rows = (await session.scalars(query.limit(limit))).all()
        return [row.to_model() for row in rows]

    @store_operation
    async def list_unfinished(self, limit: int | None = None) -> list[DeliveryRecord]:
        query = select(DeliveryRow).where(DeliveryRow.status.not_in(_TERMINAL))
        query = query.order_by(*_due_order())
        if limit is not None:
            query = query.limit(limit)
        async with self.sessions() as session:
            rows = (await session.scalars(query)).all()
        return [row.to_model() for row in rows]

    @store_operation
    async def abandon_waiting(self, webhook_id: str, reason: str, now: datetime) -> int:
        """Abandon a webhook's unclaimed waiting records in one UPDATE."""
        statement = (
            update(DeliveryRow)
            .where(
                DeliveryRow.webhook_id == webhook_id,
                DeliveryRow.status.in_(_WAITING),
                _claim_free(ensure_utc(now)),
            )
            .values(
                status=DeliveryStatus.ABANDONED.value,
                next_retry_at=None,
                error_message=reason,
                claimed_by=None,
                claim_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.sessions() as session, session.begin():
            result = await session.execute(statement)
        count = int(result.rowcount or 0)
        if count:
            logger.info("Abandoned waiting deliveries", webhook_id=webhook_id, count=count)
        return count

    @staticmethod
    def _delivery_filters(
        webhook_id: str, status: DeliveryStatus | None, event_type: str | None
    ) -> list[Any]:
        filters: list[Any] = [DeliveryRow.webhook_id == webhook_id]
        if status is not None:
            filters.append(DeliveryRow.status == status.value)
        if event_type is not None:
            filters.append(DeliveryRow.event_type == event_type)
        return filters

    @store_operation
    async def list_deliveries(
        self,
        webhook_id: str,
        status: DeliveryStatus | None = None,
        event_type: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[DeliveryRecord]:
        query = (
            select(DeliveryRow)
            .where(*self._delivery_filters(webhook_id, status, event_type))
            .order_by(DeliveryRow.created_at.desc(), DeliveryRow.id)
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        async with self.sessions() as session:
            rows = (await session.scalars(query)).all()
        return [row.to_model() for row in rows]

    @store_operation
    async def count_deliveries(
        self,
        webhook_id: str,
        status: DeliveryStatus | None = None,
        event_type: str | None = None,
    ) -> int:
        query = (
            select(func.count())
            .select_from(DeliveryRow)
            .where(*self._delivery_filters(webhook_id, status, event_type))
        )
        async with self.sessions() as session:
            return int(await session.scalar(query) or 0)

    @store_operation
    async def count_by_status(self, webhook_id: str) -> dict[DeliveryStatus, int]:
        query = (
            select(DeliveryRow.status, func.count())
            .where(DeliveryRow.webhook_id == webhook_id)
            .group_by(DeliveryRow.status)
        )
        async with self.sessions() as session:
            rows = (await session.execute(query)).all()
        return {DeliveryStatus(status): int(count) for status, count in rows}

    @store_operation
    async def append_attempt(self, attempt: DeliveryAttempt) -> None:
        async with self.sessions() as session, session.begin():
            session.add(AttemptRow.from_model(attempt))

    @store_operation
    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        query = (
            select(AttemptRow)
            .where(AttemptRow.delivery_id == delivery_id)
            .order_by(AttemptRow.attempt, AttemptRow.attempted_at)
        )
        async with self.sessions() as session:
            rows = (await session.scalars(query)).all()
        return [row.to_model() for row in rows]


__all__ = ["DeliveryMixin"]
