"""Agency commission model."""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from settlement.models.base import Base, UUIDMixin, TimestampMixin


class CommissionStatus(StrEnum):
    """Commission status values."""

    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


class Commission(Base, UUIDMixin, TimestampMixin):
    """Realized revenue share credited to an agency for one transferred split.

    Append-only; at most one row per split.
    """

    __tablename__ = "commissions"

    agency_organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id"),
        nullable=False,
    )
    customer_organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id"),
        nullable=False,
    )
    payment_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("payments.id"),
        nullable=False,
        index=True,
    )
    payment_split_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("payment_splits.id"),
        nullable=False,
        unique=True,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=CommissionStatus.PENDING.value,
    )
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    earned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_commissions_agency_earned", "agency_organization_id", "earned_at"),
    )

    def __repr__(self) -> str:
        return f"<Commission agency={self.agency_organization_id[:8]} {self.amount} {self.status}>"
