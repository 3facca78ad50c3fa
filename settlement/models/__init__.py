"""Database models."""

from settlement.models.alert import AlertKind, OperatorAlert
from settlement.models.base import Base
from settlement.models.billing import BillingPlan, Subscription, SubscriptionStatus
from settlement.models.commission import Commission, CommissionStatus
from settlement.models.organization import Organization, OrganizationType
from settlement.models.payment import (
    Payment,
    PaymentSplit,
    PaymentStatus,
    ProcessedWebhookEvent,
    SplitType,
    TransferStatus,
)

__all__ = [
    "Base",
    "Organization",
    "OrganizationType",
    "BillingPlan",
    "Subscription",
    "SubscriptionStatus",
    "Payment",
    "PaymentStatus",
    "PaymentSplit",
    "SplitType",
    "TransferStatus",
    "ProcessedWebhookEvent",
    "Commission",
    "CommissionStatus",
    "OperatorAlert",
    "AlertKind",
]
