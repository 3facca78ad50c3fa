"""Unit tests for the payment gateway integration."""

import json
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from settlement.config import Settings
from settlement.errors import (
    GatewayPermanentError,
    GatewayTransientError,
    InvalidWebhookSignature,
)
from settlement.integrations.gateway import (
    GatewayClient,
    MockGateway,
    build_gateway,
    sign_payload,
    verify_webhook_signature,
)


def _client_with(handler) -> GatewayClient:
    """Gateway client whose HTTP calls go to ``handler``."""
    client = GatewayClient(base_url="https://gateway.test/v1", api_key="sk_test")
    client._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        headers=client.headers,
    )
    return client


class TestGatewayClient:
    """Tests for GatewayClient."""

    @pytest.mark.asyncio
    async def test_charge_sends_minor_units_and_idempotency_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "ch_123", "status": "pending"})

        client = _client_with(handler)
        handle = await client.charge(Decimal("100.00"), "usd", "order-42")
        await client.close()

        assert handle.transaction_id == "ch_123"
        assert seen["url"] == "https://gateway.test/v1/charges"
        assert seen["headers"]["Idempotency-Key"] == "order-42"
        assert seen["headers"]["Authorization"] == "Bearer sk_test"
        assert seen["body"]["amount"] == 10000
        assert seen["body"]["metadata"]["idempotency_key"] == "order-42"

    @pytest.mark.asyncio
    async def test_transfer_to_connected_account(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["key"] = request.headers["Idempotency-Key"]
            return httpx.Response(200, json={"id": "tr_1"})

        client = _client_with(handler)
        handle = await client.transfer("acct_acme", Decimal("70.00"), "usd", "split-abc")

        assert handle.transfer_id == "tr_1"
        assert seen["key"] == "split-abc"
        assert seen["body"]["destination"] == "acct_acme"
        assert seen["body"]["amount"] == 7000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 502, 503])
    async def test_retryable_statuses_are_transient(self, status_code):
        client = _client_with(lambda request: httpx.Response(status_code, json={}))

        with pytest.raises(GatewayTransientError):
            await client.transfer("acct_acme", Decimal("1.00"), "usd", "split-1")

    @pytest.mark.asyncio
    async def test_decline_is_permanent_with_code(self):
        def handler(request):
            return httpx.Response(
                402,
                json={"error": {"code": "card_declined", "message": "Your card was declined"}},
            )

        client = _client_with(handler)

        with pytest.raises(GatewayPermanentError) as exc_info:
            await client.charge(Decimal("10.00"), "usd", "k1")

        assert exc_info.value.code == "card_declined"
        assert "declined" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        client = _client_with(handler)

        with pytest.raises(GatewayTransientError):
            await client.charge(Decimal("10.00"), "usd", "k1")

    @pytest.mark.asyncio
    async def test_non_json_success_body_is_transient(self):
        client = _client_with(lambda request: httpx.Response(200, text="<html>bad gateway</html>"))

        with pytest.raises(GatewayTransientError) as exc_info:
            await client.transfer("acct_acme", Decimal("1.00"), "usd", "split-1")

        assert "Malformed" in str(exc_info.value)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"status": "pending"}, {"id": None}, ["tr_1"]])
    async def test_success_without_id_is_transient(self, body):
        client = _client_with(lambda request: httpx.Response(200, json=body))

        with pytest.raises(GatewayTransientError):
            await client.transfer("acct_acme", Decimal("1.00"), "usd", "split-1")

    @pytest.mark.asyncio
    async def test_unparsable_subscription_period_is_transient(self):
        client = GatewayClient(base_url="https://gateway.test/v1", api_key="sk_test")

        with patch.object(client, "_request", new_callable=AsyncMock) as mock_req:
            mock_req.return_value = {
                "id": "sub_1",
                "current_period_start": "soon",
                "current_period_end": 1769904000,
            }

            with pytest.raises(GatewayTransientError):
                await client.create_subscription(
                    "org-1", "plan-1", Decimal("100.00"), "usd", "sub-key"
                )

    @pytest.mark.asyncio
    async def test_create_subscription_parses_period(self):
        client = GatewayClient(base_url="https://gateway.test/v1", api_key="sk_test")

        with patch.object(client, "_request", new_callable=AsyncMock) as mock_req:
            mock_req.return_value = {
                "id": "sub_1",
                "status": "active",
                "current_period_start": 1767225600,
                "current_period_end": 1769904000,
            }

            handle = await client.create_subscription(
                "org-1", "plan-1", Decimal("100.00"), "usd", "sub-key"
            )

            assert handle.subscription_id == "sub_1"
            assert handle.current_period_end > handle.current_period_start
            mock_req.assert_called_once()


class TestMockGateway:
    """Tests for the in-memory gateway."""

    @pytest.mark.asyncio
    async def test_same_key_returns_same_transfer(self):
        gateway = MockGateway()

        first = await gateway.transfer("acct", Decimal("5.00"), "usd", "split-1")
        second = await gateway.transfer("acct", Decimal("5.00"), "usd", "split-1")

        assert first == second
        assert len(gateway.transfers) == 1
        assert len(gateway.transfer_calls) == 2

    @pytest.mark.asyncio
    async def test_queued_failure_is_raised_once(self):
        gateway = MockGateway(charge_failures=[GatewayPermanentError("declined")])

        with pytest.raises(GatewayPermanentError):
            await gateway.charge(Decimal("5.00"), "usd", "k")

        handle = await gateway.charge(Decimal("5.00"), "usd", "k")
        assert handle.transaction_id.startswith("ch_")


class TestBuildGateway:
    """Tests for gateway selection."""

    def test_http_mode(self):
        gateway = build_gateway(Settings(_env_file=None, gateway_mode="http"))
        assert isinstance(gateway, GatewayClient)

    def test_mock_mode_outside_production(self):
        gateway = build_gateway(Settings(_env_file=None, gateway_mode="mock", app_env="testing"))
        assert isinstance(gateway, MockGateway)

    def test_mock_mode_refused_in_production(self):
        with pytest.raises(ValueError):
            build_gateway(Settings(_env_file=None, gateway_mode="mock", app_env="production"))


class TestWebhookSignature:
    """Tests for webhook signature verification."""

    def test_valid_signature(self):
        body = b'{"eventId": "evt_1"}'
        verify_webhook_signature(body, sign_payload(body, "secret"), "secret")

    def test_tampered_body(self):
        signature = sign_payload(b'{"amount": 100}', "secret")

        with pytest.raises(InvalidWebhookSignature):
            verify_webhook_signature(b'{"amount": 999}', signature, "secret")

    def test_wrong_secret(self):
        body = b"{}"

        with pytest.raises(InvalidWebhookSignature):
            verify_webhook_signature(body, sign_payload(body, "other"), "secret")

    @pytest.mark.parametrize("header", [None, "", "md5=abc", "deadbeef"])
    def test_missing_or_malformed_header(self, header):
        with pytest.raises(InvalidWebhookSignature):
            verify_webhook_signature(b"{}", header, "secret")
