"""Commission ledger reads for agencies."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.errors import MixedCurrencyTotal
from settlement.models.commission import Commission, CommissionStatus
from settlement.money import round_money

logger = structlog.get_logger()

ZERO = Decimal("0")


@dataclass
class CommissionSummary:
    """Per-currency commission totals for one agency and period."""

    agency_id: str
    period_start: datetime
    period_end: datetime
    totals: dict[str, Decimal] = field(default_factory=dict)
    count: int = 0


class CommissionAggregator:
    """Sums what an agency earned over a half-open period ``[start, end)``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    def _filters(self, agency_id: str, period_start: datetime, period_end: datetime) -> list:
        return [
            Commission.agency_organization_id == agency_id,
            Commission.status != CommissionStatus.CANCELLED.value,
            Commission.earned_at >= period_start,
            Commission.earned_at < period_end,
        ]

    async def aggregate(
        self,
        agency_id: str,
        period_start: datetime,
        period_end: datetime,
        currency: str | None = None,
    ) -> Decimal:
        """
        Total commission earned by an agency.

        Commissions are only written when a transfer completes, so the total
        never includes money that failed to move.

        Args:
            agency_id: Agency organization UUID
            period_start: Inclusive start
            period_end: Exclusive end
            currency: Restrict to one ISO currency code. Required when the
                agency earned in more than one currency in the period.

        Returns:
            Sum of commission amounts, 0 if none

        Raises:
            MixedCurrencyTotal: No currency given and the period spans several
        """
        filters = self._filters(agency_id, period_start, period_end)
        if currency:
            filters.append(Commission.currency == currency.lower())

        async with self.session_factory() as session:
            result = await session.execute(
                select(Commission.currency, func.sum(Commission.amount))
                .where(and_(*filters))
                .group_by(Commission.currency)
            )
            totals = result.all()

        if not totals:
            return ZERO
        if len(totals) > 1:
            raise MixedCurrencyTotal(agency_id, sorted(code for code, _ in totals))
        code, total = totals[0]
        return round_money(Decimal(str(total)), code)

    async def summarize(
        self,
        agency_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> CommissionSummary:
        """Totals for every currency the agency earned in."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    Commission.currency,
                    func.sum(Commission.amount),
                    func.count(Commission.id),
                )
                .where(and_(*self._filters(agency_id, period_start, period_end)))
                .group_by(Commission.currency)
            )
            rows = result.all()

        summary = CommissionSummary(
            agency_id=agency_id,
            period_start=period_start,
            period_end=period_end,
        )
        for currency, total, count in rows:
            summary.totals[currency] = round_money(Decimal(str(total)), currency)
            summary.count += count
        return summary

    async def list_commissions(
        self,
        agency_id: str,
        period_start: datetime,
        period_end: datetime,
        limit: int = 100,
    ) -> list[Commission]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Commission)
                .where(and_(*self._filters(agency_id, period_start, period_end)))
                .order_by(Commission.earned_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
