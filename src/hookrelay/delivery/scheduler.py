"""Retry scheduling with capped exponential backoff.

Pure functions of the attempt count and the policy snapshot on a delivery
record: the same inputs always yield the same decision.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

# Default ceiling for a single backoff delay (one hour)
DEFAULT_MAX_DELAY_MS = 3_600_000


@dataclass(frozen=True)
class RetryAt:
    """Retry after ``delay_ms`` milliseconds."""

    delay_ms: int

    def at(self, now: datetime) -> datetime:
        return now + timedelta(milliseconds=self.delay_ms)


@dataclass(frozen=True)
class Exhausted:
    """No attempts left."""

    attempts: int
    max_attempts: int


RetryDecision = RetryAt | Exhausted


def backoff_delay_ms(
    attempts: int,
    base_delay_ms: int,
    multiplier: float,
    max_delay_ms: int | None = DEFAULT_MAX_DELAY_MS,
) -> int:
    """Backoff delay after ``attempts`` failed attempts.

    ``base * multiplier ** (attempts - 1)``, capped at ``max_delay_ms``.
    With base 1000 and multiplier 2: 1000, 2000, 4000, 8000, ...
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")
    if base_delay_ms < 1:
        raise ValueError(f"base_delay_ms must be >= 1, got {base_delay_ms}")
    if multiplier < 1:
        raise ValueError(f"multiplier must be >= 1, got {multiplier}")

    if max_delay_ms is None:
        return int(base_delay_ms * multiplier ** (attempts - 1))

    # Stop multiplying once past the cap so large attempt counts cannot overflow
    delay = float(base_delay_ms)
    for _ in range(attempts - 1):
        delay *= multiplier
        if delay >= max_delay_ms:
            return max_delay_ms
    return min(int(delay), max_delay_ms)


class RetryScheduler:
    """Decides whether and when a failed delivery is retried.

    Example:
        ```python
        scheduler = RetryScheduler(max_delay_ms=60_000)
        decision = scheduler.next(attempts=1, base_delay_ms=1000, multiplier=2, max_attempts=3)
        # RetryAt(delay_ms=1000)
        scheduler.next(attempts=3, base_delay_ms=1000, multiplier=2, max_attempts=3)
        # Exhausted(attempts=3, max_attempts=3)
        ```
    """

    def __init__(self, max_delay_ms: int | None = DEFAULT_MAX_DELAY_MS) -> None:
        self.max_delay_ms = max_delay_ms

    def next(
        self,
        attempts: int,
        base_delay_ms: int,
        multiplier: float,
        max_attempts: int,
    ) -> RetryDecision:
        """Decide what happens after ``attempts`` failed attempts.

        Args:
            attempts: Attempts made so far (>= 1).
            base_delay_ms: Delay before the first retry.
            multiplier: Growth factor per attempt.
            max_attempts: Attempt budget of the delivery.

        Returns:
            ``Exhausted`` once ``attempts >= max_attempts``, else ``RetryAt``.
        """
        if attempts >= max_attempts:
            return Exhausted(attempts=attempts, max_attempts=max_attempts)
        return RetryAt(
            delay_ms=backoff_delay_ms(attempts, base_delay_ms, multiplier, self.max_delay_ms)
        )
