"""Subscription endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Response

from settlement.api.dependencies import get_services
from settlement.api.schemas import CreateSubscriptionRequest, SubscriptionResponse
from settlement.errors import OrganizationNotFound, PlanNotFound
from settlement.services.container import Services

router = APIRouter()


@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=201)
async def create_subscription(
    request: CreateSubscriptionRequest,
    response: Response,
    services: Services = Depends(get_services),
):
    """Start a subscription. Renewals are settled from gateway webhooks."""
    try:
        subscription, created = await services.subscriptions.create_subscription(
            organization_id=request.organization_id,
            plan_id=request.plan_id,
            idempotency_key=request.idempotency_key,
        )
    except (PlanNotFound, OrganizationNotFound) as e:
        raise HTTPException(404, str(e))

    if not created:
        response.status_code = 200
    return SubscriptionResponse.model_validate(subscription)


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: str,
    services: Services = Depends(get_services),
):
    subscription = await services.subscriptions.get_subscription(subscription_id)
    if subscription is None:
        raise HTTPException(404, "Subscription not found")
    return SubscriptionResponse.model_validate(subscription)
