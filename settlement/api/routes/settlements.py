"""Settlement and payment status endpoints."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response

from settlement.api.dependencies import get_services
from settlement.api.schemas import (
    CreateSettlementRequest,
    PaymentStatusResponse,
    SettlementResponse,
)
from settlement.errors import InvalidFeeConfiguration, OrganizationNotFound, PlanNotFound
from settlement.services.container import Services

logger = structlog.get_logger()
router = APIRouter()


@router.post("/settlements", response_model=SettlementResponse, status_code=201)
async def create_settlement(
    request: CreateSettlementRequest,
    response: Response,
    services: Services = Depends(get_services),
):
    """
    Charge an organization for a plan and split the revenue.

    Repeating a request with the same idempotency key returns the original
    payment with status 200.
    """
    try:
        outcome = await services.orchestrator.initiate_settlement(
            organization_id=request.organization_id,
            plan_id=request.plan_id,
            gross_amount=request.gross_amount,
            idempotency_key=request.idempotency_key,
            description=request.description,
        )
    except InvalidFeeConfiguration as e:
        raise HTTPException(422, str(e))
    except (PlanNotFound, OrganizationNotFound) as e:
        raise HTTPException(404, str(e))

    if outcome.duplicate:
        response.status_code = 200

    payment = outcome.payment
    return SettlementResponse(
        payment_id=payment.id,
        status=payment.status,
        gross_amount=payment.gross_amount,
        platform_amount=payment.platform_amount,
        agency_amount=payment.agency_amount,
        currency=payment.currency,
        duplicate=outcome.duplicate,
    )


@router.get("/payments/{payment_id}", response_model=PaymentStatusResponse)
async def get_payment_status(
    payment_id: str,
    services: Services = Depends(get_services),
):
    """Payment status as the payer sees it."""
    view = await services.orchestrator.get_payment_status(payment_id)
    if view is None:
        raise HTTPException(404, "Payment not found")

    return PaymentStatusResponse(
        payment_id=view.payment_id,
        status=view.status,
        gross_amount=view.gross_amount,
        currency=view.currency,
        created_at=view.created_at,
        completed_at=view.completed_at,
        failed_at=view.failed_at,
    )
