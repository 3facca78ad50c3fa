"""External service integrations."""

from settlement.integrations.gateway import (
    GatewayClient,
    MockGateway,
    PaymentGateway,
    SubscriptionHandle,
    TransactionHandle,
    TransferHandle,
    build_gateway,
    sign_payload,
    verify_webhook_signature,
)

__all__ = [
    "PaymentGateway",
    "GatewayClient",
    "MockGateway",
    "build_gateway",
    "TransactionHandle",
    "TransferHandle",
    "SubscriptionHandle",
    "sign_payload",
    "verify_webhook_signature",
]
