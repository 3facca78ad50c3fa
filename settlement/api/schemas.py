"""API request/response schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, List
from pydantic import BaseModel, ConfigDict, Field


# === Settlement Schemas ===

class CreateSettlementRequest(BaseModel):
    """Request to charge an organization for a plan."""
    organization_id: str = Field(..., min_length=1, max_length=36)
    plan_id: str = Field(..., min_length=1, max_length=36)
    gross_amount: Optional[Decimal] = Field(None, description="Defaults to the plan's customer price")
    idempotency_key: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=500)


class SplitDetail(BaseModel):
    """One beneficiary's share of a payment."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    split_type: str
    to_organization_id: str
    amount: Decimal
    percentage: Decimal
    transfer_status: str
    retry_count: int
    failure_reason: Optional[str] = None
    gateway_transfer_id: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    transferred_at: Optional[datetime] = None


class SettlementResponse(BaseModel):
    """Result of a settlement request."""
    payment_id: str
    status: str
    gross_amount: Decimal
    platform_amount: Decimal
    agency_amount: Decimal
    currency: str
    duplicate: bool = False


class PaymentStatusResponse(BaseModel):
    """Payer-facing payment status."""
    payment_id: str
    status: str
    gross_amount: Decimal
    currency: str
    created_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class PaymentDetail(BaseModel):
    """Operator view of a payment and its splits."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    plan_id: Optional[str] = None
    subscription_id: Optional[str] = None
    gross_amount: Decimal
    platform_amount: Decimal
    agency_amount: Decimal
    currency: str
    status: str
    idempotency_key: str
    external_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    splits: List[SplitDetail] = []


# === Commission Schemas ===

class CommissionTotalResponse(BaseModel):
    """Commission earned by an agency over a period."""
    agency_id: str
    period_start: datetime
    period_end: datetime
    total: Decimal
    currency: Optional[str] = None
    by_currency: dict[str, Decimal] = {}
    count: int = 0


# === Subscription Schemas ===

class CreateSubscriptionRequest(BaseModel):
    """Request to start a subscription."""
    organization_id: str = Field(..., min_length=1, max_length=36)
    plan_id: str = Field(..., min_length=1, max_length=36)
    idempotency_key: str = Field(..., min_length=1, max_length=255)


class SubscriptionResponse(BaseModel):
    """Subscription state."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    plan_id: str
    status: str
    external_subscription_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


# === Organization Schemas ===

class SettlementAccountRequest(BaseModel):
    """Connected-account reference from agency onboarding."""
    account_ref: str = Field(..., min_length=1, max_length=255)


# === Webhook Schemas ===

class WebhookAck(BaseModel):
    """Webhook acknowledgement."""
    received: bool = True
    event_id: str
    outcome: str


# === Operator Schemas ===

class AlertResponse(BaseModel):
    """Operator alert."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: str
    reference_id: Optional[str] = None
    event_id: Optional[str] = None
    message: str
    payload: dict[str, Any] = {}
    resolved: bool
    created_at: datetime
    resolved_at: Optional[datetime] = None


class FailedTransferResponse(SplitDetail):
    """Agency transfer that needs manual action."""
    payment_id: str
    last_attempt_at: Optional[datetime] = None


class TransferRunResponse(BaseModel):
    """Counts from one transfer pass."""
    outcomes: dict[str, int]


# === Analytics Schemas ===

class PaymentAnalyticsResponse(BaseModel):
    """Revenue over completed payments."""
    period: dict[str, Optional[str]]
    total_revenue: Decimal
    platform_revenue: Decimal
    agency_revenue: Decimal
    completed_count: int
    pending_count: int
    failed_count: int
    by_currency: dict[str, Decimal] = {}
