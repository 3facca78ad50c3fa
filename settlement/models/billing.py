"""Billing plan and subscription models."""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from settlement.models.base import Base, UUIDMixin, TimestampMixin
from settlement.money import HUNDRED, round_money


class BillingPlan(Base, UUIDMixin, TimestampMixin):
    """Sellable plan. Rows are never edited once paid for; new versions get new rows."""

    __tablename__ = "billing_plans"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by_organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id"),
        nullable=False,
        index=True,
    )
    parent_plan_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("billing_plans.id"),
        nullable=True,
    )  # Previous version, or the platform base plan an agency plan extends

    # Pricing
    base_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    platform_fee_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
        default=Decimal("30"),
    )
    agency_margin_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
        default=Decimal("0"),
    )  # Surcharge an agency adds on top of the base price

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def customer_price(self) -> Decimal:
        """Price charged to an end customer: base price plus agency margin."""
        marked_up = self.base_price * (HUNDRED + self.agency_margin_percentage) / HUNDRED
        return round_money(marked_up, self.currency)

    def __repr__(self) -> str:
        return f"<BillingPlan {self.name} {self.base_price} {self.currency}>"


class SubscriptionStatus(StrEnum):
    """Subscription status values."""

    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Subscription(Base, UUIDMixin, TimestampMixin):
    """Recurring plan purchase. Renewals are reconciled from gateway events."""

    __tablename__ = "subscriptions"

    organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id"),
        nullable=False,
        index=True,
    )
    plan_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("billing_plans.id"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.INCOMPLETE.value,
        index=True,
    )

    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    external_subscription_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
    )

    # Billing period
    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    canceled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return f"<Subscription {self.id[:8]} {self.status}>"
