"""Operator alert queue."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from settlement.models.base import Base, JSONType, UUIDMixin, TimestampMixin


class AlertKind(StrEnum):
    """Problems that need a human."""

    UNKNOWN_TRANSACTION = "unknown_transaction"
    TRANSFER_FAILED = "transfer_failed"
    CHARGE_AFTER_FAILURE = "charge_after_failure"
    INVALID_EVENT = "invalid_event"


class OperatorAlert(Base, UUIDMixin, TimestampMixin):
    """Entry in the operator queue: unmatched webhooks and terminal failures."""

    __tablename__ = "operator_alerts"

    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    reference_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )  # Split id, payment id, or gateway transaction id
    event_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
    )  # One alert per unmatched gateway event
    message: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_alerts_open", "resolved", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<OperatorAlert {self.kind} ref={self.reference_id}>"
