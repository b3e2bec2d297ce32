"""Tests for single HTTP delivery attempts."""

from __future__ import annotations

import httpx
import pytest
from helpers import ScriptedEndpoint, make_record, make_webhook

from hookrelay.delivery.executor import (
    TRUNCATION_MARKER,
    DeliveryExecutor,
    classify_status,
    truncate_body,
)
from hookrelay.delivery.signing import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify
from hookrelay.exceptions import PermanentDeliveryError, TransientDeliveryError

NOW = 1_700_000_000.0


def executor_for(endpoint: ScriptedEndpoint, **kwargs: object) -> DeliveryExecutor:
    return DeliveryExecutor(endpoint.client(), clock=lambda: NOW, **kwargs)  # type: ignore


class TestHelpers:
    """Tests for truncate_body and classify_status."""

    def test_truncate_short_body(self) -> None:
        """Bodies within the limit should be kept."""
        assert truncate_body("hello", 10) == "hello"

    def test_truncate_long_body(self) -> None:
        """Long bodies should be cut and marked."""
        assert truncate_body("x" * 50, 10) == "x" * 10 + TRUNCATION_MARKER

    def test_truncate_empty(self) -> None:
        """Empty bodies should be stored as None."""
        assert truncate_body("", 10) is None
        assert truncate_body(None, 10) is None

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_transient_statuses(self, status: int) -> None:
        """429 and 5xx should be transient."""
        assert classify_status(status) == TransientDeliveryError.code

    @pytest.mark.parametrize("status", [400, 401, 404, 410, 422])
    def test_permanent_statuses(self, status: int) -> None:
        """Other 4xx should be permanent."""
        assert classify_status(status) == PermanentDeliveryError.code


class TestDeliveryExecutor:
    """Tests for DeliveryExecutor.attempt."""

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        """A 2xx response should be a success carrying the response details."""
        endpoint = ScriptedEndpoint(200, body='{"received":true}')
        webhook = make_webhook()
        record = make_record(webhook, attempts=1)

        outcome = await executor_for(endpoint).attempt(record, webhook)

        assert outcome.success
        assert outcome.http_status == 200
        assert outcome.response_body == '{"received":true}'
        assert outcome.error is None
        assert outcome.signature is not None

    @pytest.mark.asyncio
    async def test_request_is_signed(self) -> None:
        """The request should carry the payload and a verifiable signature."""
        endpoint = ScriptedEndpoint(204)
        webhook = make_webhook()
        record = make_record(webhook, attempts=1)

        await executor_for(endpoint).attempt(record, webhook)

        request = endpoint.requests[0]
        body = request.content.decode()
        assert request.method == "POST"
        assert str(request.url) == "https://example.com/hooks"
        assert body == record.payload
        assert request.headers[TIMESTAMP_HEADER] == str(int(NOW))
        assert verify(
            webhook.secret,
            body,
            request.headers[TIMESTAMP_HEADER],
            request.headers[SIGNATURE_HEADER],
        )
        assert request.headers["X-Delivery-Attempt"] == "1"

    @pytest.mark.asyncio
    async def test_server_error(self) -> None:
        """A 5xx should fail with the status and reason phrase."""
        endpoint = ScriptedEndpoint(503, body="down")
        webhook = make_webhook()

        outcome = await executor_for(endpoint).attempt(make_record(webhook), webhook)

        assert not outcome.success
        assert outcome.http_status == 503
        assert outcome.error == "HTTP 503: Service Unavailable"
        assert outcome.error_code == TransientDeliveryError.code
        assert outcome.response_body == "down"

    @pytest.mark.asyncio
    async def test_client_error(self) -> None:
        """A 4xx should fail as permanent."""
        endpoint = ScriptedEndpoint(404)
        webhook = make_webhook()

        outcome = await executor_for(endpoint).attempt(make_record(webhook), webhook)

        assert not outcome.success
        assert outcome.error_code == PermanentDeliveryError.code

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """A timeout should fail without an HTTP status."""
        endpoint = ScriptedEndpoint(httpx.ReadTimeout)
        webhook = make_webhook()

        outcome = await executor_for(endpoint).attempt(make_record(webhook), webhook)

        assert not outcome.success
        assert outcome.http_status is None
        assert outcome.error == "Request timeout"
        assert outcome.error_code == TransientDeliveryError.code

    @pytest.mark.asyncio
    async def test_connection_error(self) -> None:
        """A refused connection should fail as transient."""
        endpoint = ScriptedEndpoint(httpx.ConnectError)
        webhook = make_webhook()

        outcome = await executor_for(endpoint).attempt(make_record(webhook), webhook)

        assert not outcome.success
        assert outcome.error is not None
        assert outcome.error.startswith("Connection error")
        assert outcome.error_code == TransientDeliveryError.code

    @pytest.mark.asyncio
    async def test_response_body_truncated(self) -> None:
        """Stored response bodies should be capped."""
        endpoint = ScriptedEndpoint(500, body="e" * 100)
        webhook = make_webhook()

        outcome = await executor_for(endpoint, max_response_body_chars=20).attempt(
            make_record(webhook), webhook
        )

        assert outcome.response_body == "e" * 20 + TRUNCATION_MARKER

    @pytest.mark.asyncio
    async def test_custom_user_agent(self) -> None:
        """The configured User-Agent should be sent."""
        endpoint = ScriptedEndpoint(200)
        webhook = make_webhook()

        await executor_for(endpoint, user_agent="acme-relay/2").attempt(
            make_record(webhook), webhook
        )

        assert endpoint.requests[0].headers["User-Agent"] == "acme-relay/2"
