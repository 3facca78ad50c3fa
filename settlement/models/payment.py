"""Payment, PaymentSplit and processed webhook event models."""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement.models.base import Base, UUIDMixin, TimestampMixin, utcnow


class PaymentStatus(StrEnum):
    """Payment status values. ``completed`` and ``failed`` are terminal."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SplitType(StrEnum):
    """Beneficiary role of a split."""

    PLATFORM_FEE = "platform_fee"
    AGENCY_REVENUE = "agency_revenue"


class TransferStatus(StrEnum):
    """Transfer bookkeeping state of a split."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Payment(Base, UUIDMixin, TimestampMixin):
    """A customer payment and how it divides between platform and agency."""

    __tablename__ = "payments"

    # Payer
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
    subscription_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("subscriptions.id"),
        nullable=True,
    )  # Set for subscription renewals

    # Amounts
    gross_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    platform_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    agency_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentStatus.PENDING.value,
        index=True,
    )

    # Dedupe keys
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    external_transaction_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
    )  # Null until the gateway answers the charge

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    splits = relationship(
        "PaymentSplit",
        back_populates="payment",
        order_by="PaymentSplit.split_type.desc()",
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_payments_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != PaymentStatus.PENDING.value

    def __repr__(self) -> str:
        return f"<Payment {self.id[:8]} {self.gross_amount} {self.currency} {self.status}>"


class PaymentSplit(Base, UUIDMixin, TimestampMixin):
    """One beneficiary's share of a payment, transferred on its own."""

    __tablename__ = "payment_splits"

    payment_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("payments.id"),
        nullable=False,
        index=True,
    )
    from_organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    to_organization_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        index=True,
    )  # Agency id or the platform sentinel

    split_type: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)

    # Transfer bookkeeping
    transfer_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TransferStatus.PENDING.value,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    gateway_transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transferred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Worker claim (compare-and-set lease)
    locked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payment = relationship("Payment", back_populates="splits")

    __table_args__ = (
        Index("idx_splits_transfer_due", "transfer_status", "next_attempt_at"),
        Index("idx_splits_payment_beneficiary", "payment_id", "to_organization_id", unique=True),
    )

    def __repr__(self) -> str:
        return f"<PaymentSplit {self.split_type} {self.amount} {self.transfer_status}>"


class ProcessedWebhookEvent(Base):
    """Gateway event ids already applied. Used only as the dedupe gate."""

    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    outcome: Mapped[str] = mapped_column(String(30), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent {self.event_id} {self.event_type} {self.outcome}>"
