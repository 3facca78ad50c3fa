"""Organization onboarding endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from settlement.api.dependencies import get_services
from settlement.api.schemas import SettlementAccountRequest
from settlement.errors import NotAnAgency, OrganizationNotFound
from settlement.services.container import Services

router = APIRouter()


@router.put("/organizations/{organization_id}/settlement-account")
async def register_settlement_account(
    organization_id: str,
    request: SettlementAccountRequest,
    services: Services = Depends(get_services),
):
    """Record the connected account an agency onboarded with."""
    try:
        await services.directory.register_settlement_account(organization_id, request.account_ref)
    except OrganizationNotFound as e:
        raise HTTPException(404, str(e))
    except NotAnAgency as e:
        raise HTTPException(422, str(e))

    return {"organization_id": organization_id, "account_ref": request.account_ref}
