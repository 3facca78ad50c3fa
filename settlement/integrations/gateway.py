"""Payment gateway integration."""

import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, Optional, Protocol
from uuid import uuid4

import httpx
import structlog

from settlement.config import Settings
from settlement.errors import (
    GatewayPermanentError,
    GatewayTransientError,
    InvalidWebhookSignature,
)
from settlement.money import to_minor_units

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-Gateway-Signature"

# Statuses worth retrying with the same idempotency key
TRANSIENT_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class TransactionHandle:
    """Gateway reference for a charge."""

    transaction_id: str
    status: str = "pending"


@dataclass(frozen=True)
class TransferHandle:
    """Gateway reference for a transfer to a connected account."""

    transfer_id: str


@dataclass(frozen=True)
class SubscriptionHandle:
    """Gateway reference for a subscription."""

    subscription_id: str
    status: str
    current_period_start: datetime
    current_period_end: datetime


class PaymentGateway(Protocol):
    """Operations the settlement engine needs from a payment gateway."""

    async def charge(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransactionHandle: ...

    async def transfer(
        self,
        destination_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferHandle: ...

    async def create_subscription(
        self,
        customer_ref: str,
        plan_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> SubscriptionHandle: ...

    async def close(self) -> None: ...


class GatewayClient:
    """HTTP client for the payment gateway REST API."""

    def __init__(self, base_url: str, api_key: str, timeout: float = 15.0):
        """
        Initialize gateway client.

        Args:
            base_url: API root (e.g., "https://api.gateway.example.com/v1")
            api_key: Secret API key for the platform account
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        idempotency_key: str,
        **kwargs,
    ) -> dict[str, Any]:
        """Make an API request, mapping failures onto transient/permanent errors."""
        url = f"{self.base_url}/{endpoint}"
        headers = {"Idempotency-Key": idempotency_key}

        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            code, message = _error_details(e.response)
            logger.error(
                "gateway_api_error",
                status_code=status_code,
                url=url,
                code=code,
                response=e.response.text[:500],
            )
            if status_code in TRANSIENT_STATUS_CODES:
                raise GatewayTransientError(message, code=code) from e
            raise GatewayPermanentError(message, code=code) from e
        except httpx.RequestError as e:
            logger.error("gateway_request_error", url=url, error=str(e))
            raise GatewayTransientError(f"{type(e).__name__}: {e}") from e

        # The request may have taken effect; retrying with the same key is safe
        try:
            data = response.json()
        except ValueError as e:
            logger.error(
                "gateway_malformed_response",
                status_code=response.status_code,
                url=url,
                response=response.text[:500],
            )
            raise GatewayTransientError(f"Malformed gateway response: {e}") from e
        if not isinstance(data, dict):
            raise GatewayTransientError("Malformed gateway response: expected an object")
        return data

    # === Charges ===

    async def charge(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransactionHandle:
        """
        Create a charge on the platform account.

        Args:
            amount: Amount in major units
            currency: ISO currency code
            idempotency_key: Forwarded so network retries never double charge
            metadata: Free-form references echoed back on webhooks

        Returns:
            TransactionHandle
        """
        data = await self._request(
            "POST",
            "charges",
            idempotency_key,
            json={
                "amount": to_minor_units(amount, currency),
                "currency": currency,
                "metadata": {**(metadata or {}), "idempotency_key": idempotency_key},
            },
        )
        return TransactionHandle(
            transaction_id=_required(data, "id"),
            status=data.get("status", "pending"),
        )

    # === Transfers ===

    async def transfer(
        self,
        destination_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferHandle:
        """Move funds from the platform balance to a connected account."""
        data = await self._request(
            "POST",
            "transfers",
            idempotency_key,
            json={
                "destination": destination_ref,
                "amount": to_minor_units(amount, currency),
                "currency": currency,
                "metadata": metadata or {},
            },
        )
        return TransferHandle(transfer_id=_required(data, "id"))

    # === Subscriptions ===

    async def create_subscription(
        self,
        customer_ref: str,
        plan_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> SubscriptionHandle:
        """Start a recurring charge for a customer."""
        data = await self._request(
            "POST",
            "subscriptions",
            idempotency_key,
            json={
                "customer": customer_ref,
                "plan": plan_ref,
                "amount": to_minor_units(amount, currency),
                "currency": currency,
                "metadata": {**(metadata or {}), "idempotency_key": idempotency_key},
            },
        )
        try:
            period_start = datetime.fromtimestamp(_required(data, "current_period_start"), UTC)
            period_end = datetime.fromtimestamp(_required(data, "current_period_end"), UTC)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise GatewayTransientError(f"Malformed subscription period: {e}") from e
        return SubscriptionHandle(
            subscription_id=_required(data, "id"),
            status=data.get("status", "active"),
            current_period_start=period_start,
            current_period_end=period_end,
        )


def _required(data: dict[str, Any], key: str) -> Any:
    """Field the gateway must return on success."""
    value = data.get(key)
    if value is None:
        raise GatewayTransientError(f"Malformed gateway response: missing {key!r}")
    return value


def _error_details(response: httpx.Response) -> tuple[str | None, str]:
    """Extract (code, message) from a gateway error body."""
    try:
        error = response.json().get("error", {})
    except ValueError:
        return None, f"HTTP {response.status_code}"
    if not isinstance(error, dict):
        return None, str(error)
    return error.get("code"), error.get("message") or f"HTTP {response.status_code}"


@dataclass
class MockGateway:
    """In-memory gateway for development and tests.

    Repeated calls with the same idempotency key return the first result, as
    the real gateway does. Queue exceptions in ``charge_failures`` /
    ``transfer_failures`` to make the next calls fail.
    """

    charges: dict[str, TransactionHandle] = field(default_factory=dict)
    transfers: dict[str, TransferHandle] = field(default_factory=dict)
    subscriptions: dict[str, SubscriptionHandle] = field(default_factory=dict)
    transfer_calls: list[dict[str, Any]] = field(default_factory=list)
    charge_failures: list[Exception] = field(default_factory=list)
    transfer_failures: list[Exception] = field(default_factory=list)

    async def charge(self, amount, currency, idempotency_key, metadata=None) -> TransactionHandle:
        if idempotency_key in self.charges:
            return self.charges[idempotency_key]
        if self.charge_failures:
            raise self.charge_failures.pop(0)
        handle = TransactionHandle(transaction_id=f"ch_{uuid4().hex[:24]}")
        self.charges[idempotency_key] = handle
        logger.info("mock_gateway_charge", amount=str(amount), transaction_id=handle.transaction_id)
        return handle

    async def transfer(
        self, destination_ref, amount, currency, idempotency_key, metadata=None
    ) -> TransferHandle:
        self.transfer_calls.append(
            {
                "destination": destination_ref,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
            }
        )
        if idempotency_key in self.transfers:
            return self.transfers[idempotency_key]
        if self.transfer_failures:
            raise self.transfer_failures.pop(0)
        handle = TransferHandle(transfer_id=f"tr_{uuid4().hex[:24]}")
        self.transfers[idempotency_key] = handle
        logger.info("mock_gateway_transfer", amount=str(amount), destination=destination_ref)
        return handle

    async def create_subscription(
        self, customer_ref, plan_ref, amount, currency, idempotency_key, metadata=None
    ) -> SubscriptionHandle:
        if idempotency_key in self.subscriptions:
            return self.subscriptions[idempotency_key]
        if self.charge_failures:
            raise self.charge_failures.pop(0)
        now = datetime.now(UTC)
        handle = SubscriptionHandle(
            subscription_id=f"sub_{uuid4().hex[:24]}",
            status="active",
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
        )
        self.subscriptions[idempotency_key] = handle
        return handle

    async def close(self) -> None:
        return None


def build_gateway(settings: Settings) -> PaymentGateway:
    """Construct the gateway for this process. Called once by the app lifespan."""
    if settings.gateway_mode == "http":
        return GatewayClient(
            base_url=settings.gateway_base_url,
            api_key=settings.gateway_api_key,
            timeout=settings.gateway_timeout,
        )
    if settings.is_production:
        raise ValueError("Mock gateway is not allowed in production")
    logger.warning("mock_gateway_enabled", env=settings.app_env)
    return MockGateway()


# === Webhook signatures ===


def sign_payload(body: bytes, secret: str) -> str:
    """Signature header value for ``body``."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_webhook_signature(body: bytes, signature_header: str | None, secret: str) -> None:
    """
    Check a webhook signature before the payload is trusted.

    Raises:
        InvalidWebhookSignature: Header missing, malformed, or wrong
    """
    if not signature_header or not signature_header.startswith("sha256="):
        raise InvalidWebhookSignature("Missing or malformed signature header")
    if not hmac.compare_digest(sign_payload(body, secret), signature_header):
        raise InvalidWebhookSignature("Signature does not match payload")
