"""Single HTTP delivery attempts.

The executor signs the stored payload, POSTs it to the destination and
reports what happened. It never persists anything and never raises for a
failed delivery: every failure becomes a DeliveryOutcome with a reason and
an error code, and the state machine decides what to do with it.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import httpx

from hookrelay.delivery.signing import build_headers, sign
from hookrelay.exceptions import PermanentDeliveryError, TransientDeliveryError
from hookrelay.logging import get_logger
from hookrelay.models import DeliveryOutcome

if TYPE_CHECKING:
    from collections.abc import Callable

    from hookrelay.models import DeliveryRecord, Webhook

logger = get_logger(__name__)

TRUNCATION_MARKER = "... (truncated)"


def truncate_body(body: str | None, limit: int) -> str | None:
    """Cap a response body before it is stored on the record."""
    if not body:
        return None
    if len(body) <= limit:
        return body
    return body[:limit] + TRUNCATION_MARKER


def classify_status(status_code: int) -> str:
    """Error code for a non-2xx response.

    429 and 5xx are transient; other 4xx are permanent. Both are retried
    up to the record's attempt budget.
    """
    if status_code == 429 or status_code >= 500:
        return TransientDeliveryError.code
    return PermanentDeliveryError.code


class DeliveryExecutor:
    """Performs one bounded HTTP attempt for a delivery record.

    Example:
        ```python
        async with httpx.AsyncClient() as client:
            executor = DeliveryExecutor(client)
            outcome = await executor.attempt(record, webhook)
            if not outcome.success:
                print(outcome.error, outcome.error_code)
        ```
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        user_agent: str = "hookrelay/0.1",
        max_response_body_chars: int = 5000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the executor.

        Args:
            client: Shared HTTP client (inject a MockTransport client in tests).
            user_agent: Default User-Agent header.
            max_response_body_chars: Response bodies are truncated to this size.
            clock: Source of Unix time for signature timestamps.
        """
        self._client = client
        self._user_agent = user_agent
        self._max_body = max_response_body_chars
        self._clock = clock

    async def attempt(self, record: DeliveryRecord, webhook: Webhook) -> DeliveryOutcome:
        """POST the record's payload to the webhook URL.

        The whole call, including reading the response body, is bounded by
        ``webhook.timeout`` milliseconds.

        Args:
            record: Delivery being attempted (``attempts`` already counts this one).
            webhook: Destination and secret.

        Returns:
            DeliveryOutcome describing the attempt.
        """
        timestamp = int(self._clock())
        signature = sign(webhook.secret, record.payload, timestamp)
        headers = build_headers(record, webhook, timestamp, signature, self._user_agent)
        timeout_s = webhook.timeout / 1000

        started = time.monotonic()
        try:
            async with asyncio.timeout(timeout_s):
                response = await self._client.post(
                    str(webhook.url),
                    content=record.payload.encode("utf-8"),
                    headers=headers,
                    timeout=timeout_s,
                )
        except (TimeoutError, httpx.TimeoutException):
            return self._failure(started, signature, "Request timeout", TransientDeliveryError.code)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            return self._failure(
                started, signature, f"Invalid URL: {e}", PermanentDeliveryError.code
            )
        except httpx.ConnectError as e:
            return self._failure(
                started, signature, f"Connection error: {e}", TransientDeliveryError.code
            )
        except httpx.HTTPError as e:
            message = str(e) or type(e).__name__
            return self._failure(started, signature, message, TransientDeliveryError.code)

        duration_ms = self._elapsed_ms(started)
        body = truncate_body(response.text, self._max_body)

        if 200 <= response.status_code < 300:
            logger.info(
                "Webhook delivered",
                delivery_id=record.id,
                webhook_id=webhook.id,
                status=response.status_code,
                duration_ms=duration_ms,
            )
            return DeliveryOutcome(
                success=True,
                http_status=response.status_code,
                response_body=body,
                duration_ms=duration_ms,
                signature=signature,
            )

        reason = f"HTTP {response.status_code}"
        if response.reason_phrase:
            reason = f"{reason}: {response.reason_phrase}"
        logger.warning(
            "Webhook rejected",
            delivery_id=record.id,
            webhook_id=webhook.id,
            status=response.status_code,
            duration_ms=duration_ms,
        )
        return DeliveryOutcome(
            success=False,
            http_status=response.status_code,
            response_body=body,
            duration_ms=duration_ms,
            error=reason,
            error_code=classify_status(response.status_code),
            signature=signature,
        )

    def _failure(
        self, started: float, signature: str, error: str, error_code: str
    ) -> DeliveryOutcome:
        logger.warning("Webhook attempt failed", error=error, error_code=error_code)
        return DeliveryOutcome(
            success=False,
            duration_ms=self._elapsed_ms(started),
            error=error,
            error_code=error_code,
            signature=signature,
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return max(0, int((time.monotonic() - started) * 1000))
