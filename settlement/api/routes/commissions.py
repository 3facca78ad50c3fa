"""Agency commission endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from settlement.api.dependencies import get_services
from settlement.api.schemas import CommissionTotalResponse
from settlement.errors import MixedCurrencyTotal
from settlement.services.container import Services

router = APIRouter()


@router.get("/agencies/{agency_id}/commissions", response_model=CommissionTotalResponse)
async def get_agency_commissions(
    agency_id: str,
    period_start: datetime = Query(..., description="Inclusive start of period"),
    period_end: datetime = Query(..., description="Exclusive end of period"),
    currency: str | None = Query(None, min_length=3, max_length=3),
    services: Services = Depends(get_services),
):
    """Commission an agency earned from completed transfers in the period."""
    if period_end <= period_start:
        raise HTTPException(422, "period_end must be after period_start")

    try:
        total = await services.commissions.aggregate(agency_id, period_start, period_end, currency)
    except MixedCurrencyTotal as e:
        raise HTTPException(422, str(e)) from e
    summary = await services.commissions.summarize(agency_id, period_start, period_end)

    return CommissionTotalResponse(
        agency_id=agency_id,
        period_start=period_start,
        period_end=period_end,
        total=total,
        currency=currency,
        by_currency=summary.totals,
        count=summary.count,
    )
