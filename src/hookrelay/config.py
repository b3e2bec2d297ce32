"""Configuration management for hookrelay."""

import logging
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """hookrelay configuration loaded from environment variables.

    All settings can be overridden via environment variables with the
    HOOKRELAY_ prefix. For example:
        HOOKRELAY_DATABASE_URL=postgresql+asyncpg://localhost/hooks
        HOOKRELAY_REDIS_URL=redis://localhost:6379
        HOOKRELAY_RETRY_DELAY_MS=2000

    Retry policy values (max_retry_attempts, retry_delay_ms,
    retry_multiplier) are snapshotted into each DeliveryRecord when it is
    created; changing them only affects new deliveries.
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///./hookrelay.db",
        description="SQLAlchemy async database URL for webhooks and deliveries",
    )
    redis_url: str | None = Field(
        default=None,
        description=(
            "Redis URL for rate-limit counters (e.g., redis://localhost:6379). "
            "If not set, counters are kept in memory (not shared across instances)."
        ),
    )

    # Retry policy
    max_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Default maximum delivery attempts for new webhooks",
    )
    retry_delay_ms: int = Field(
        default=1000,
        ge=100,
        le=60000,
        description="Base delay before the first retry",
    )
    retry_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=10.0,
        description="Backoff multiplier applied per attempt",
    )
    max_retry_delay_ms: int = Field(
        default=3_600_000,
        ge=100,
        description="Upper bound for a single backoff delay",
    )

    # HTTP
    timeout_ms: int = Field(
        default=10000,
        ge=1000,
        le=60000,
        description="Default request timeout for new webhooks",
    )
    max_response_body_chars: int = Field(
        default=5000,
        ge=0,
        le=100_000,
        description="Response bodies are truncated to this size before storage",
    )
    user_agent: str = Field(
        default="hookrelay/0.1",
        description="User-Agent header sent with every delivery",
    )
    signature_tolerance_seconds: int = Field(
        default=300,
        ge=1,
        description="Clock skew receivers should accept when calling signing.verify",
    )
    abandon_on_gone: bool = Field(
        default=False,
        description="Fail a delivery immediately when the destination answers 410 Gone",
    )

    # Registration limits
    max_webhooks_per_user: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Maximum webhooks a user may register",
    )

    # Rate limiting
    rate_limit_per_minute: int = Field(
        default=60,
        ge=1,
        le=1000,
        description="Global default deliveries per minute per webhook",
    )
    rate_limit_deferral_ms: int = Field(
        default=5000,
        ge=100,
        le=60000,
        description="Delay before a rate-limited delivery is tried again",
    )

    # Circuit breaker
    suspend_threshold: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Consecutive failures after which a webhook is suspended",
    )

    # Workers
    worker_count: int = Field(
        default=4,
        ge=1,
        le=256,
        description="Number of concurrent delivery workers",
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        le=300,
        description="How often the store is polled for due deliveries",
    )
    poll_batch_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Maximum due deliveries fetched per poll",
    )
    claim_ttl_seconds: int = Field(
        default=120,
        ge=1,
        description="Lifetime of a worker's claim on a delivery record",
    )
    registry_refresh_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Maximum age of the cached webhook registry",
    )
    store_backoff_seconds: float = Field(
        default=2.0,
        gt=0,
        le=300,
        description="Worker back-off after the store becomes unreachable",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    model_config = {
        "env_prefix": "HOOKRELAY_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_claim_ttl(self) -> "Settings":
        """A claim must outlive the longest HTTP attempt it guards.

        Webhook timeouts are capped at 60 seconds, so a shorter claim could
        expire while the owning worker is still waiting on the destination
        and let a second worker deliver the same record concurrently.
        """
        if self.claim_ttl_seconds * 1000 <= 60000:
            raise ValueError(
                f"claim_ttl_seconds ({self.claim_ttl_seconds}) must exceed the maximum "
                f"webhook timeout of 60 seconds"
            )
        if self.env == "production" and self.redis_url is None:
            logger.warning(
                "Rate-limit counters are in memory; limits are not shared across instances"
            )
        return self


# Global settings instance
settings = Settings()
