"""Analytics endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from settlement.api.dependencies import get_services
from settlement.api.schemas import PaymentAnalyticsResponse
from settlement.services.analytics import payment_analytics
from settlement.services.container import Services

router = APIRouter()


@router.get("/analytics/payments", response_model=PaymentAnalyticsResponse)
async def get_payment_analytics(
    start_date: datetime | None = Query(None, description="Start of period"),
    end_date: datetime | None = Query(None, description="End of period"),
    organization_id: str | None = Query(None, description="Filter by paying organization"),
    services: Services = Depends(get_services),
):
    """
    Revenue for the specified period.

    Includes:
    - Total, platform and agency revenue over completed payments
    - Completed, pending and failed payment counts
    - Revenue per currency
    """
    stats = await payment_analytics(
        services.session_factory,
        organization_id=organization_id,
        start=start_date,
        end=end_date,
    )

    return PaymentAnalyticsResponse(
        period={
            "start": start_date.isoformat() if start_date else None,
            "end": end_date.isoformat() if end_date else None,
        },
        total_revenue=stats.total_revenue,
        platform_revenue=stats.platform_revenue,
        agency_revenue=stats.agency_revenue,
        completed_count=stats.completed_count,
        pending_count=stats.pending_count,
        failed_count=stats.failed_count,
        by_currency=stats.by_currency,
    )
