"""Operator queue: alerts and terminal transfer failures."""

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.database import get_session_context
from settlement.models.alert import AlertKind, OperatorAlert
from settlement.models.base import utcnow
from settlement.models.payment import Payment, PaymentSplit, PaymentStatus, TransferStatus

logger = structlog.get_logger()


async def raise_alert(
    session: AsyncSession,
    kind: AlertKind,
    message: str,
    reference_id: str | None = None,
    event_id: str | None = None,
    payload: dict[str, Any] | None = None,
) -> OperatorAlert:
    """
    Add an alert inside the caller's transaction.

    Alerts tied to a gateway event are created once per event id.
    """
    if event_id is not None:
        result = await session.execute(
            select(OperatorAlert).where(OperatorAlert.event_id == event_id)
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing

    alert = OperatorAlert(
        kind=kind.value,
        message=message,
        reference_id=reference_id,
        event_id=event_id,
        payload=payload or {},
    )
    session.add(alert)
    await session.flush()

    logger.error(
        "operator_alert_raised",
        kind=kind.value,
        reference_id=reference_id,
        event_id=event_id,
        message=message,
    )
    return alert


class OperatorQueue:
    """Operator-facing reads over alerts and failed transfers."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def list_alerts(self, include_resolved: bool = False, limit: int = 100) -> list[OperatorAlert]:
        stmt = select(OperatorAlert).order_by(OperatorAlert.created_at.desc()).limit(limit)
        if not include_resolved:
            stmt = stmt.where(OperatorAlert.resolved.is_(False))
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def resolve_alert(self, alert_id: str) -> OperatorAlert | None:
        async with get_session_context(self.session_factory) as session:
            alert = await session.get(OperatorAlert, alert_id)
            if alert is None:
                return None
            if not alert.resolved:
                alert.resolved = True
                alert.resolved_at = utcnow()
                logger.info("operator_alert_resolved", alert_id=alert_id, kind=alert.kind)
            return alert

    async def list_failed_transfers(self, limit: int = 100) -> list[PaymentSplit]:
        """Agency transfers that failed terminally after a completed charge, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentSplit)
                .join(Payment, Payment.id == PaymentSplit.payment_id)
                .where(
                    PaymentSplit.transfer_status == TransferStatus.FAILED.value,
                    Payment.status == PaymentStatus.COMPLETED.value,
                )
                .order_by(PaymentSplit.updated_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
