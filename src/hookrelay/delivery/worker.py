"""Due-work queue and the retry worker pool.

The queue only holds (due_at, delivery_id) handles; the store stays the
source of truth. Losing the queue loses nothing: startup recovery and the
periodic poller rebuild it from the store, and the poller also picks up
records whose claim lapsed and work created by other engine instances.
"""

from __future__ import annotations

import asyncio
import heapq
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from hookrelay.exceptions import StoreUnavailable
from hookrelay.logging import bind_context, get_logger, unbind_context
from hookrelay.models import DeliveryStatus, ensure_utc, generate_id, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable

    from hookrelay.models import DeliveryRecord
    from hookrelay.storage import DeliveryStore

    from .state_machine import DeliveryStateMachine

logger = get_logger(__name__)


@dataclass(frozen=True, order=True)
class WorkHandle:
    """Reference to a delivery record that becomes due at ``due_at``."""

    due_at: datetime
    delivery_id: str


def due_time(record: DeliveryRecord) -> datetime:
    """When a record should next be looked at by a worker."""
    if record.status == DeliveryStatus.DELIVERING and record.claim_expires_at is not None:
        return record.claim_expires_at
    return record.next_retry_at or record.created_at


class DueWorkQueue:
    """Min-heap of work handles ordered by due time.

    ``get`` waits until the earliest handle is due. Pushing the same
    (delivery_id, due_at) twice is a no-op; pushing a record with a new
    due time adds a second handle, and whichever fires first wins the
    claim.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._heap: list[WorkHandle] = []
        self._queued: set[tuple[str, datetime]] = set()
        self._wakeup = asyncio.Event()

    def __len__(self) -> int:
        return len(self._heap)

    def push(self, delivery_id: str, due_at: datetime | None = None) -> bool:
        """Queue a handle. Returns False if the same handle is already queued."""
        due_at = ensure_utc(due_at) if due_at is not None else self._clock()
        if (delivery_id, due_at) in self._queued:
            return False
        self._queued.add((delivery_id, due_at))
        heapq.heappush(self._heap, WorkHandle(due_at, delivery_id))
        self._wakeup.set()
        return True

    def _pop(self) -> WorkHandle:
        handle = heapq.heappop(self._heap)
        self._queued.discard((handle.delivery_id, handle.due_at))
        return handle

    def get_nowait(self) -> WorkHandle | None:
        """Pop the earliest handle if it is due, else None."""
        if self._heap and self._heap[0].due_at <= self._clock():
            return self._pop()
        return None

    async def get(self) -> WorkHandle:
        """Wait for the earliest handle to become due and pop it."""
        while True:
            timeout: float | None = None
            if self._heap:
                timeout = (self._heap[0].due_at - self._clock()).total_seconds()
                if timeout <= 0:
                    return self._pop()

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except TimeoutError:
                pass


class RetryWorkerPool:
    """Fixed pool of asyncio workers draining a DueWorkQueue.

    Example:
        ```python
        pool = RetryWorkerPool(store, machine, queue, worker_count=4)
        await pool.start()  # recovers unfinished work, starts workers + poller
        ...
        await pool.stop()
        ```
    """

    def __init__(
        self,
        store: DeliveryStore,
        state_machine: DeliveryStateMachine,
        queue: DueWorkQueue,
        worker_count: int = 4,
        poll_interval_seconds: float = 5.0,
        poll_batch_size: int = 100,
        store_backoff_seconds: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._machine = state_machine
        self._queue = queue
        self.worker_count = worker_count
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_batch_size = poll_batch_size
        self.store_backoff_seconds = store_backoff_seconds
        self._clock = clock
        self.instance_id = generate_id("wrk")
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Recover unfinished work, then start the workers and the poller."""
        if self.running:
            return
        await self.recover()
        for i in range(self.worker_count):
            worker_id = f"{self.instance_id}-{i}"
            self._tasks.append(asyncio.create_task(self._run_worker(worker_id), name=worker_id))
        self._tasks.append(asyncio.create_task(self._poll_loop(), name=f"{self.instance_id}-poll"))
        logger.info("Worker pool started", instance_id=self.instance_id, workers=self.worker_count)

    async def stop(self) -> None:
        """Cancel workers and the poller.

        An attempt cut off mid-flight keeps its claim and is picked up again
        once the claim lapses.
        """
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Worker pool stopped", instance_id=self.instance_id)

    async def recover(self) -> int:
        """Queue every non-terminal record by its due time."""
        records = await self._store.list_unfinished()
        for record in records:
            self._queue.push(record.id, due_time(record))
        if records:
            logger.info("Recovered unfinished deliveries", count=len(records))
        return len(records)

    async def poll_once(self) -> int:
        """Queue the records the store reports as claimable now."""
        due = await self._store.list_due(self._clock(), limit=self.poll_batch_size)
        pushed = sum(1 for record in due if self._queue.push(record.id, due_time(record)))
        if pushed:
            logger.debug("Poller queued due deliveries", count=pushed)
        return pushed

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval_seconds)
            try:
                await self.poll_once()
            except StoreUnavailable as e:
                logger.warning("Poller cannot reach store", error=str(e))

    async def _run_worker(self, worker_id: str) -> None:
        # Each task runs in its own context copy, so bindings stay per worker
        bind_context(worker_id=worker_id)
        while True:
            handle = await self._queue.get()
            bind_context(delivery_id=handle.delivery_id)
            try:
                await self._machine.process(handle.delivery_id, worker_id)
            except StoreUnavailable as e:
                retry_at = self._clock() + timedelta(seconds=self.store_backoff_seconds)
                logger.warning(
                    "Store unavailable, backing off",
                    backoff_seconds=self.store_backoff_seconds,
                    error=str(e),
                )
                self._queue.push(handle.delivery_id, retry_at)
                await asyncio.sleep(self.store_backoff_seconds)
            except Exception:
                # Keep the worker alive; the record's claim lapses and the poller retries it
                logger.exception("Unexpected error processing delivery")
            finally:
                unbind_context("delivery_id")


__all__ = ["DueWorkQueue", "RetryWorkerPool", "WorkHandle", "due_time"]
