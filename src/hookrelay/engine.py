"""Delivery engine wiring.

Example:
    ```python
    from hookrelay import DeliveryEngine, Event

    async with DeliveryEngine.create() as engine:
        webhook = await engine.service.create_webhook(
            user_id="user_123", url="https://example.com/hooks", events=["user.*"]
        )
        await engine.publish(Event(type="user.created", payload={"id": "u_1"}))

        # Or drain a message bus
        await engine.consume(bus.messages())
    ```
"""

from __future__ import annotations

from collections.abc import AsyncIterable
from dataclasses import dataclass
from typing import Any

import httpx
import pydantic

from hookrelay.config import Settings
from hookrelay.delivery import (
    CounterStore,
    DeliveryExecutor,
    DeliveryStateMachine,
    Dispatcher,
    DueWorkQueue,
    RateLimiter,
    RetryScheduler,
    RetryWorkerPool,
    WebhookRegistry,
    get_counter_store,
)
from hookrelay.logging import get_logger
from hookrelay.models import Event
from hookrelay.service import WebhookService
from hookrelay.storage import DeliveryStore, SQLStore

logger = get_logger(__name__)


@dataclass
class DeliveryEngine:
    """All delivery components sharing one store, queue and HTTP client.

    Use ``create()`` to build one from settings, or construct it directly
    with hand-made components in tests.

    Attributes:
        settings: Configuration the components were built from.
        store: Source of truth for webhooks and deliveries.
        counters: Rate-limit counter backend.
        http_client: Shared outbound HTTP client.
        registry: Webhook cache and circuit breaker.
        queue: Due-work queue.
        dispatcher: Event fan-out.
        state_machine: Per-record lifecycle.
        pool: Workers and poller.
        service: Admin-facing operations.
    """

    settings: Settings
    store: DeliveryStore
    counters: CounterStore
    http_client: httpx.AsyncClient
    registry: WebhookRegistry
    queue: DueWorkQueue
    dispatcher: Dispatcher
    state_machine: DeliveryStateMachine
    pool: RetryWorkerPool
    service: WebhookService

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        store: DeliveryStore | None = None,
        counters: CounterStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> DeliveryEngine:
        """Build an engine with default components.

        Args:
            settings: Optional settings. Uses defaults if None.
            store: Store override (defaults to SQLStore on settings.database_url).
            counters: Counter store override (defaults to Redis if configured).
            http_client: HTTP client override (inject a MockTransport in tests).

        Returns:
            Engine ready to ``start()``.
        """
        if settings is None:
            settings = Settings()

        store = store or SQLStore(settings.database_url)
        counters = counters or get_counter_store(settings.redis_url)
        http_client = http_client or httpx.AsyncClient(follow_redirects=False)

        queue = DueWorkQueue()
        registry = WebhookRegistry(
            store,
            suspend_threshold=settings.suspend_threshold,
            refresh_seconds=settings.registry_refresh_seconds,
        )
        executor = DeliveryExecutor(
            http_client,
            user_agent=settings.user_agent,
            max_response_body_chars=settings.max_response_body_chars,
        )
        rate_limiter = RateLimiter(counters, default_limit=settings.rate_limit_per_minute)
        state_machine = DeliveryStateMachine(
            store,
            registry,
            executor,
            rate_limiter,
            scheduler=RetryScheduler(max_delay_ms=settings.max_retry_delay_ms),
            claim_ttl_seconds=settings.claim_ttl_seconds,
            rate_limit_deferral_ms=settings.rate_limit_deferral_ms,
            abandon_on_gone=settings.abandon_on_gone,
            on_reschedule=queue.push,
        )
        dispatcher = Dispatcher(
            store,
            registry,
            enqueue=queue.push,
            retry_delay_ms=settings.retry_delay_ms,
            retry_multiplier=settings.retry_multiplier,
        )
        pool = RetryWorkerPool(
            store,
            state_machine,
            queue,
            worker_count=settings.worker_count,
            poll_interval_seconds=settings.poll_interval_seconds,
            poll_batch_size=settings.poll_batch_size,
            store_backoff_seconds=settings.store_backoff_seconds,
        )
        service = WebhookService(
            store=store,
            registry=registry,
            executor=executor,
            settings=settings,
            rate_limiter=rate_limiter,
            enqueue=queue.push,
        )
        return cls(
            settings=settings,
            store=store,
            counters=counters,
            http_client=http_client,
            registry=registry,
            queue=queue,
            dispatcher=dispatcher,
            state_machine=state_machine,
            pool=pool,
            service=service,
        )

    async def start(self) -> None:
        """Initialize the store, load the registry and start the workers."""
        await self.store.initialize()
        await self.registry.refresh()
        await self.pool.start()
        logger.info("Delivery engine started", workers=self.settings.worker_count)

    async def stop(self) -> None:
        """Stop the workers and release every resource."""
        await self.pool.stop()
        await self.http_client.aclose()
        await self.counters.close()
        await self.store.close()
        logger.info("Delivery engine stopped")

    async def __aenter__(self) -> DeliveryEngine:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    async def publish(self, event: Event | dict[str, Any]) -> list[str]:
        """Fan an event out to its subscribers.

        Returns:
            IDs of the delivery records created.
        """
        return await self.dispatcher.on_event(event)

    async def consume(self, messages: AsyncIterable[Event | dict[str, Any]]) -> int:
        """Publish every message from a bus until it is exhausted.

        Malformed messages are logged and skipped.

        Returns:
            Number of messages published.
        """
        published = 0
        async for message in messages:
            try:
                await self.publish(message)
            except (ValueError, pydantic.ValidationError) as e:
                logger.warning("Skipping malformed event message", error=str(e))
                continue
            published += 1
        return published


__all__ = ["DeliveryEngine"]
