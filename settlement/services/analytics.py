"""Revenue analytics over settled payments."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.models.payment import Payment, PaymentStatus


@dataclass
class PaymentAnalytics:
    """Revenue totals for completed payments, with status counts."""

    total_revenue: Decimal = Decimal("0.00")
    platform_revenue: Decimal = Decimal("0.00")
    agency_revenue: Decimal = Decimal("0.00")
    completed_count: int = 0
    pending_count: int = 0
    failed_count: int = 0
    by_currency: dict[str, Decimal] = field(default_factory=dict)


def _dec(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(Decimal("0.01"))


async def payment_analytics(
    session_factory: async_sessionmaker[AsyncSession],
    organization_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> PaymentAnalytics:
    """
    Summarize payments created in ``[start, end)``.

    Revenue only counts completed payments; pending and failed are counted
    but carry no revenue.

    Args:
        session_factory: Session factory
        organization_id: Filter by paying organization
        start: Inclusive start of period
        end: Exclusive end of period

    Returns:
        PaymentAnalytics
    """
    filters = []
    if organization_id:
        filters.append(Payment.organization_id == organization_id)
    if start:
        filters.append(Payment.created_at >= start)
    if end:
        filters.append(Payment.created_at < end)

    completed = [*filters, Payment.status == PaymentStatus.COMPLETED.value]

    async with session_factory() as session:
        totals_result = await session.execute(
            select(
                func.sum(Payment.gross_amount),
                func.sum(Payment.platform_amount),
                func.sum(Payment.agency_amount),
            ).where(and_(*completed))
        )
        totals = totals_result.one()

        currency_result = await session.execute(
            select(Payment.currency, func.sum(Payment.gross_amount))
            .where(and_(*completed))
            .group_by(Payment.currency)
        )
        currency_rows = currency_result.all()

        status_result = await session.execute(
            select(Payment.status, func.count(Payment.id))
            .where(and_(*filters))
            .group_by(Payment.status)
        )
        by_status = dict(status_result.all())

    # Mixed currencies sum together here; by_currency has the split
    return PaymentAnalytics(
        total_revenue=_dec(totals[0]),
        platform_revenue=_dec(totals[1]),
        agency_revenue=_dec(totals[2]),
        completed_count=by_status.get(PaymentStatus.COMPLETED.value, 0),
        pending_count=by_status.get(PaymentStatus.PENDING.value, 0),
        failed_count=by_status.get(PaymentStatus.FAILED.value, 0),
        by_currency={currency: _dec(total) for currency, total in currency_rows},
    )
