"""Delivery engine components.

- signing: canonical payloads and HMAC-SHA256 signatures
- ratelimit: per-destination fixed-window rate limiting
- scheduler: capped exponential backoff decisions
- executor: single bounded HTTP attempts
- state_machine: a delivery record's lifecycle
- registry: webhook cache and circuit breaker
- dispatcher: event fan-out into delivery records
- worker: due-work queue and worker pool
"""

from .dispatcher import Dispatcher
from .executor import DeliveryExecutor
from .ratelimit import (
    CounterStore,
    InMemoryCounterStore,
    RateLimiter,
    RedisCounterStore,
    get_counter_store,
)
from .registry import WebhookRegistry
from .scheduler import Exhausted, RetryAt, RetryScheduler, backoff_delay_ms
from .signing import canonical_payload, generate_secret, sign, verify
from .state_machine import DeliveryStateMachine
from .worker import DueWorkQueue, RetryWorkerPool, WorkHandle

__all__ = [
    "CounterStore",
    "DeliveryExecutor",
    "DeliveryStateMachine",
    "Dispatcher",
    "DueWorkQueue",
    "Exhausted",
    "InMemoryCounterStore",
    "RateLimiter",
    "RedisCounterStore",
    "RetryAt",
    "RetryScheduler",
    "RetryWorkerPool",
    "WebhookRegistry",
    "WorkHandle",
    "backoff_delay_ms",
    "canonical_payload",
    "generate_secret",
    "get_counter_store",
    "sign",
    "verify",
]
