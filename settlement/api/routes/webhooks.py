"""Payment gateway webhook endpoint."""

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import ValidationError

from settlement.api.dependencies import get_services
from settlement.api.schemas import WebhookAck
from settlement.errors import InvalidWebhookSignature
from settlement.integrations.gateway import SIGNATURE_HEADER, verify_webhook_signature
from settlement.services.container import Services
from settlement.services.reconciliation import EventOutcome, GatewayEvent

logger = structlog.get_logger()
router = APIRouter()


@router.post("/webhooks/gateway", response_model=WebhookAck)
async def gateway_webhook(
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
):
    """
    Handle a signed gateway event.

    Returns 200 once the event's effect is committed, so the gateway stops
    redelivering. Events that match no local record are queued for an
    operator and answered with 202.
    """
    body = await request.body()

    try:
        verify_webhook_signature(
            body,
            request.headers.get(SIGNATURE_HEADER),
            services.settings.gateway_webhook_secret,
        )
    except InvalidWebhookSignature as e:
        logger.warning("gateway_webhook_rejected", reason=str(e))
        raise HTTPException(401, "Invalid webhook signature")

    try:
        event = GatewayEvent.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
        logger.warning("gateway_webhook_malformed", error=str(e)[:200])
        raise HTTPException(400, "Malformed event")

    outcome = await services.reconciler.handle_gateway_event(event)
    if outcome == EventOutcome.UNMATCHED:
        response.status_code = 202

    return WebhookAck(event_id=event.event_id, outcome=outcome.value)
