"""Operator endpoints: payment internals, failed transfers, alerts."""

from fastapi import APIRouter, Depends, HTTPException, Query
import structlog

from settlement.api.dependencies import get_services
from settlement.api.schemas import (
    AlertResponse,
    FailedTransferResponse,
    PaymentDetail,
    TransferRunResponse,
)
from settlement.services.container import Services

logger = structlog.get_logger()
router = APIRouter(prefix="/admin")


@router.get("/payments/{payment_id}", response_model=PaymentDetail)
async def get_payment_detail(
    payment_id: str,
    services: Services = Depends(get_services),
):
    """Payment with splits and transfer state."""
    payment = await services.orchestrator.get_payment(payment_id)
    if payment is None:
        raise HTTPException(404, "Payment not found")
    return PaymentDetail.model_validate(payment)


@router.get("/transfers/failed", response_model=list[FailedTransferResponse])
async def list_failed_transfers(
    limit: int = Query(100, ge=1, le=500),
    services: Services = Depends(get_services),
):
    """Agency transfers that need manual action."""
    splits = await services.operator.list_failed_transfers(limit=limit)
    return [FailedTransferResponse.model_validate(split, from_attributes=True) for split in splits]


@router.get("/alerts", response_model=list[AlertResponse])
async def list_alerts(
    include_resolved: bool = Query(False),
    limit: int = Query(100, ge=1, le=500),
    services: Services = Depends(get_services),
):
    alerts = await services.operator.list_alerts(include_resolved=include_resolved, limit=limit)
    return [AlertResponse.model_validate(alert) for alert in alerts]


@router.post("/alerts/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(
    alert_id: str,
    services: Services = Depends(get_services),
):
    alert = await services.operator.resolve_alert(alert_id)
    if alert is None:
        raise HTTPException(404, "Alert not found")
    return AlertResponse.model_validate(alert)


@router.post("/transfers/run", response_model=TransferRunResponse)
async def run_transfers(services: Services = Depends(get_services)):
    """Run one transfer pass now instead of waiting for the scheduler."""
    counts = await services.executor.run_due_transfers()
    logger.info("manual_transfer_pass", **counts)
    return TransferRunResponse(outcomes=counts)
