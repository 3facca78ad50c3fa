"""Organization directory backed by the organizations table."""

from typing import Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.database import get_session_context
from settlement.errors import NotAnAgency, OrganizationNotFound
from settlement.models.base import utcnow
from settlement.models.organization import Organization, OrganizationType
from settlement.models.payment import PaymentSplit, TransferStatus

logger = structlog.get_logger()


class OrganizationDirectory(Protocol):
    """Lookups the settlement engine needs about organizations."""

    async def get_organization(self, organization_id: str) -> Organization: ...

    async def resolve_parent_agency(self, organization_id: str) -> str | None: ...

    async def get_settlement_account_ref(self, organization_id: str) -> str | None: ...


class SqlOrganizationDirectory:
    """Directory implementation reading the local organizations table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_organization(self, organization_id: str) -> Organization:
        async with self.session_factory() as session:
            org = await session.get(Organization, organization_id)
        if org is None:
            raise OrganizationNotFound(f"Organization {organization_id} not found")
        return org

    async def resolve_parent_agency(self, organization_id: str) -> str | None:
        """
        Return the agency that resells to ``organization_id``, if any.

        Only a direct agency parent counts; the chain never has more than one
        agency hop.
        """
        async with self.session_factory() as session:
            org = await session.get(Organization, organization_id)
            if org is None:
                raise OrganizationNotFound(f"Organization {organization_id} not found")
            if not org.parent_organization_id:
                return None
            parent = await session.get(Organization, org.parent_organization_id)

        if parent is None or not parent.is_agency:
            logger.warning(
                "non_agency_parent_ignored",
                organization_id=organization_id,
                parent_id=org.parent_organization_id,
            )
            return None
        return parent.id

    async def get_settlement_account_ref(self, organization_id: str) -> str | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Organization.settlement_account_ref).where(
                    Organization.id == organization_id
                )
            )
            return result.scalar_one_or_none()

    async def register_settlement_account(self, organization_id: str, account_ref: str) -> None:
        """
        Record the connected account an agency finished onboarding with.

        Splits held for lack of an account become due immediately and are
        picked up by the next transfer pass.
        """
        async with get_session_context(self.session_factory) as session:
            org = await session.get(Organization, organization_id)
            if org is None:
                raise OrganizationNotFound(f"Organization {organization_id} not found")
            if org.type != OrganizationType.AGENCY.value:
                raise NotAnAgency(f"Organization {organization_id} is not an agency")
            await session.execute(
                update(Organization)
                .where(Organization.id == organization_id)
                .values(settlement_account_ref=account_ref)
            )
            released = await session.execute(
                update(PaymentSplit)
                .where(
                    PaymentSplit.to_organization_id == organization_id,
                    PaymentSplit.transfer_status == TransferStatus.PROCESSING.value,
                )
                .values(next_attempt_at=utcnow())
                .execution_options(synchronize_session=False)
            )

        logger.info(
            "settlement_account_registered",
            organization_id=organization_id,
            account_ref=account_ref,
            released_splits=released.rowcount,
        )
