#!/usr/bin/env python3
"""Webhook delivery demo.

Registers a webhook, publishes an event and watches hookrelay deliver it:
1. The receiver answers 503 to the first request
2. The engine schedules a retry with exponential backoff
3. The second request succeeds and the receiver verifies its signature

The receiver is an in-process httpx transport and deliveries live in an
in-memory store, so no network, database or Redis is needed.
"""

import asyncio

import httpx

from hookrelay import DeliveryEngine, DeliveryStatus, Event, Settings, configure_logging
from hookrelay.delivery import InMemoryCounterStore
from hookrelay.delivery.signing import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify
from hookrelay.storage import InMemoryStore

USER_ID = "user_demo"


class Receiver:
    """Fake endpoint that fails once, then checks signatures."""

    def __init__(self) -> None:
        self.secret = ""
        self.tolerance_seconds: int | None = None
        self.requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.requests == 1:
            print(f"  receiver: request #{self.requests} -> 503")
            return httpx.Response(503, text="warming up")

        valid = verify(
            self.secret,
            request.content.decode(),
            request.headers[TIMESTAMP_HEADER],
            request.headers[SIGNATURE_HEADER],
            tolerance_seconds=self.tolerance_seconds,
        )
        print(f"  receiver: request #{self.requests} -> 200 (signature valid: {valid})")
        print(f"  receiver: body {request.content.decode()}")
        return httpx.Response(200 if valid else 401, text="ok")


async def main() -> None:
    configure_logging(level="WARNING", format="text")

    print("=" * 70)
    print("hookrelay Delivery Demo")
    print("=" * 70)

    receiver = Receiver()
    settings = Settings(
        _env_file=None,
        retry_delay_ms=500,
        worker_count=2,
        poll_interval_seconds=1.0,
    )
    engine = DeliveryEngine.create(
        settings=settings,
        store=InMemoryStore(),
        counters=InMemoryCounterStore(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(receiver)),
    )

    async with engine:
        print("\n1. REGISTER")
        print("-" * 70)
        webhook = await engine.service.create_webhook(
            user_id=USER_ID,
            url="https://receiver.example.com/hooks",
            events=["user.*"],
            description="Demo receiver",
        )
        receiver.secret = webhook.secret
        receiver.tolerance_seconds = settings.signature_tolerance_seconds
        view = await engine.service.get_webhook(webhook.id, USER_ID)
        print(f"  webhook:  {view.id}")
        print(f"  events:   {view.events}")
        print(f"  secret:   {webhook.secret} (shown once, later reads give {view.secret!r})")

        print("\n2. PUBLISH")
        print("-" * 70)
        created = await engine.publish(
            Event(type="user.created", payload={"user_id": "u_1", "email": "ada@example.com"})
        )
        delivery_id = created[0]
        print(f"  delivery: {delivery_id}")

        print("\n3. DELIVER")
        print("-" * 70)
        while True:
            record = await engine.service.get_delivery(webhook.id, delivery_id, USER_ID)
            if record.is_terminal:
                break
            await asyncio.sleep(0.05)

        print(f"\n  status:   {record.status.value} after {record.attempts} attempts")
        for attempt in await engine.service.get_attempts(webhook.id, delivery_id, USER_ID):
            result = "ok" if attempt.success else attempt.error_message
            print(f"  attempt {attempt.attempt}: {attempt.response_status} {result}")

        print("\n4. STATS")
        print("-" * 70)
        stats = await engine.service.get_stats(webhook.id, USER_ID)
        print(f"  delivered:    {stats.by_status.get(DeliveryStatus.DELIVERED, 0)}")
        print(f"  success rate: {stats.success_rate}")
        print(f"  failures:     {stats.failure_count} (streak {stats.consecutive_failures})")

    print("\n" + "=" * 70)


if __name__ == "__main__":
    asyncio.run(main())
