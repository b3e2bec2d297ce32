"""Structured logging for hookrelay.

Log events are emitted through structlog on top of the standard library,
rendered as JSON lines in production and as a coloured console stream
during development. Engine modules log key/value events such as
``delivery_id``, ``webhook_id`` and ``attempt`` rather than formatted text.

Secrets and signatures never reach the output: the ``redact_secrets``
processor masks them wherever they appear in an event dict.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from structlog.typing import EventDict, Processor, WrappedLogger

    from hookrelay.config import Settings

_configured = False

# Event keys whose values must never be written to logs
REDACTED_KEYS = frozenset({"secret", "signature", "authorization", "x-webhook-signature"})


def redact_secrets(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    """Mask secret-bearing values in an event dict (structlog processor)."""
    for key in list(event_dict):
        if key.lower() in REDACTED_KEYS and event_dict[key] is not None:
            event_dict[key] = "***"
    return event_dict


def configure_logging(
    level: str = "INFO",
    format: str = "json",
) -> None:
    """Configure structured logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format: "json" for production, "text" for a coloured console.

    Example:
        ```python
        from hookrelay.logging import configure_logging, get_logger

        configure_logging(level="DEBUG", format="text")
        get_logger(__name__).info("engine_started", workers=4)
        ```
    """
    global _configured

    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if format.lower() == "json":
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def configure_from_settings(settings: Settings) -> None:
    """Configure logging from the ``log_level``/``log_format`` settings."""
    configure_logging(level=settings.log_level, format=settings.log_format)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, configuring defaults on first use.

    Args:
        name: Logger name, usually ``__name__``.
    """
    if not _configured:
        configure_logging()

    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: Any) -> None:
    """Bind key/values to every log line emitted from the current task.

    Workers bind ``worker_id`` once and ``delivery_id`` per record so that
    executor and store log lines can be correlated.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from the logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()
