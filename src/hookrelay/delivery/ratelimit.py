"""Per-destination rate limiting.

Fixed one-minute windows keyed by webhook ID, counted in a shared store
that supports atomic increment-with-TTL. Two backends are provided:
InMemoryCounterStore (single process) and RedisCounterStore (shared across
engine instances, requires the ``redis`` extra).

A rejected attempt is a scheduling deferral, never a failure. If the
counter store is unreachable the limiter fails open: delivery availability
wins over strict enforcement.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from hookrelay.exceptions import CounterStoreUnavailable
from hookrelay.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

logger = get_logger(__name__)

# Track if Redis is available (optional dependency)
try:
    import redis.asyncio as aioredis
    from redis.exceptions import NoScriptError, RedisError

    REDIS_AVAILABLE = True
except ImportError:
    REDIS_AVAILABLE = False

KEY_PREFIX = "hookrelay:ratelimit:"


class CounterStore(ABC):
    """Atomic increment-with-TTL counters."""

    @abstractmethod
    async def incr(self, key: str, ttl_seconds: int) -> int:
        """Increment ``key`` and return the new value.

        The TTL is set when the key is created and not extended afterwards.

        Raises:
            CounterStoreUnavailable: If the backend cannot be reached.
        """

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""


class InMemoryCounterStore(CounterStore):
    """Process-local counters (not suitable for multi-instance deployments)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._counters: dict[str, tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def incr(self, key: str, ttl_seconds: int) -> int:
        async with self._lock:
            now = self._clock()
            count, expires_at = self._counters.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + ttl_seconds
            count += 1
            self._counters[key] = (count, expires_at)
            self._evict(now)
            return count

    def _evict(self, now: float) -> None:
        # Drop expired windows so the dict does not grow without bound
        if len(self._counters) < 1024:
            return
        for key in [k for k, (_, exp) in self._counters.items() if exp <= now]:
            del self._counters[key]


class RedisCounterStore(CounterStore):
    """Redis-backed counters using an atomic Lua script.

    INCR and the first EXPIRE run in one script, so concurrent workers
    hitting the same destination never race between the two calls.
    Requires the 'redis' extra: pip install hookrelay[redis]
    """

    _INCR_SCRIPT = """
    local count = redis.call('INCR', KEYS[1])
    if count == 1 then
        redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
    end
    return count
    """

    def __init__(self, redis_url: str | None = None, client: Any = None) -> None:
        if client is None:
            if not REDIS_AVAILABLE:
                raise ImportError(
                    "Redis is not installed. Install with: pip install hookrelay[redis]"
                )
            if redis_url is None:
                raise ValueError("redis_url or client is required")
            client = aioredis.Redis.from_url(redis_url, decode_responses=True)
        self._redis = client
        self._script_sha: str | None = None

    async def _load_script(self) -> str:
        self._script_sha = str(await self._redis.script_load(self._INCR_SCRIPT))
        return self._script_sha

    async def incr(self, key: str, ttl_seconds: int) -> int:
        try:
            sha = self._script_sha or await self._load_script()
            try:
                result = await self._redis.evalsha(sha, 1, key, ttl_seconds)
            except NoScriptError:
                # Script was flushed from the server cache, reload it
                sha = await self._load_script()
                result = await self._redis.evalsha(sha, 1, key, ttl_seconds)
        except RedisError as e:
            raise CounterStoreUnavailable(f"Redis counter store unavailable: {e}") from e
        except OSError as e:
            raise CounterStoreUnavailable(f"Redis counter store unreachable: {e}") from e
        return int(result)

    async def close(self) -> None:
        await self._redis.aclose()


class RateLimiter:
    """Admits or rejects delivery attempts per webhook per minute.

    Example:
        ```python
        limiter = RateLimiter(InMemoryCounterStore(), default_limit=60)
        if await limiter.try_acquire("whk_abc", limit=webhook.rate_limit):
            ...  # attempt delivery
        ```
    """

    def __init__(
        self,
        counters: CounterStore,
        default_limit: int = 60,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._counters = counters
        self.default_limit = default_limit
        self.window_seconds = window_seconds
        self._clock = clock

    def window_key(self, webhook_id: str, now: float | None = None) -> str:
        """Counter key for the window containing ``now``."""
        current = self._clock() if now is None else now
        window = int(current // self.window_seconds)
        return f"{KEY_PREFIX}{webhook_id}:{window}"

    async def try_acquire(self, webhook_id: str, limit: int | None = None) -> bool:
        """Count an attempt against the webhook's current window.

        Args:
            webhook_id: Destination being delivered to.
            limit: Per-webhook override, else the global default.

        Returns:
            True if the attempt may proceed.
        """
        effective_limit = limit or self.default_limit
        key = self.window_key(webhook_id)
        try:
            count = await self._counters.incr(key, self.window_seconds)
        except CounterStoreUnavailable as e:
            logger.warning(
                "Rate limiter failing open",
                webhook_id=webhook_id,
                error=str(e),
            )
            return True

        if count > effective_limit:
            logger.info(
                "Rate limit reached",
                webhook_id=webhook_id,
                limit=effective_limit,
                count=count,
            )
            return False
        return True


def get_counter_store(redis_url: str | None = None) -> CounterStore:
    """Pick a counter store backend.

    Uses Redis when a URL is configured, otherwise process-local counters.
    """
    if redis_url:
        logger.info("Using Redis counter store", redis_url=redis_url)
        return RedisCounterStore(redis_url)
    logger.info("Using in-memory counter store (not distributed)")
    return InMemoryCounterStore()
