#!/usr/bin/env python3
"""Seed the platform, an agency, an end customer and their plans."""

import argparse
import asyncio
from decimal import Decimal

import sys
sys.path.insert(0, ".")

from settlement.config import settings
from settlement.database import dispose_engine, get_session_context
from settlement.models import BillingPlan, Organization, OrganizationType


async def seed_billing(
    agency_name: str,
    customer_name: str,
    base_price: Decimal,
    platform_fee: Decimal,
    agency_margin: Decimal,
    account_ref: str | None,
) -> dict:
    """Create the organizations and plans a settlement needs."""
    async with get_session_context() as session:
        platform = await session.get(Organization, settings.platform_organization_id)
        if platform is None:
            platform = Organization(
                id=settings.platform_organization_id,
                name="Platform",
                type=OrganizationType.PLATFORM.value,
            )
            session.add(platform)

        agency = Organization(
            name=agency_name,
            type=OrganizationType.AGENCY.value,
            parent_organization_id=platform.id,
            settlement_account_ref=account_ref,
        )
        session.add(agency)
        await session.flush()

        customer = Organization(
            name=customer_name,
            type=OrganizationType.END_CUSTOMER.value,
            parent_organization_id=agency.id,
        )
        session.add(customer)

        base_plan = BillingPlan(
            name="Voice Agent Pro",
            created_by_organization_id=platform.id,
            base_price=base_price,
            currency=settings.default_currency,
            platform_fee_percentage=platform_fee,
            agency_margin_percentage=Decimal("0"),
        )
        session.add(base_plan)
        await session.flush()

        agency_plan = BillingPlan(
            name=f"Voice Agent Pro ({agency_name})",
            created_by_organization_id=agency.id,
            parent_plan_id=base_plan.id,
            base_price=base_price,
            currency=settings.default_currency,
            platform_fee_percentage=platform_fee,
            agency_margin_percentage=agency_margin,
        )
        session.add(agency_plan)
        await session.flush()

        result = {
            "platform_id": platform.id,
            "agency_id": agency.id,
            "customer_id": customer.id,
            "base_plan_id": base_plan.id,
            "agency_plan_id": agency_plan.id,
            "customer_price": agency_plan.customer_price(),
        }

    await dispose_engine()
    return result


def main():
    parser = argparse.ArgumentParser(description="Seed billing data")
    parser.add_argument("--agency-name", default="Demo Agency", help="Agency name")
    parser.add_argument("--customer-name", default="Demo Customer", help="End customer name")
    parser.add_argument("--base-price", default="100.00", help="Plan base price")
    parser.add_argument("--platform-fee", default="30", help="Platform fee percentage")
    parser.add_argument("--agency-margin", default="0", help="Agency margin percentage")
    parser.add_argument("--account-ref", default=None, help="Agency settlement account")

    args = parser.parse_args()

    result = asyncio.run(seed_billing(
        agency_name=args.agency_name,
        customer_name=args.customer_name,
        base_price=Decimal(args.base_price),
        platform_fee=Decimal(args.platform_fee),
        agency_margin=Decimal(args.agency_margin),
        account_ref=args.account_ref,
    ))

    print("\n✅ Billing data seeded!\n")
    print(f"Platform:    {result['platform_id']}")
    print(f"Agency:      {result['agency_id']}")
    print(f"Customer:    {result['customer_id']}")
    print(f"Base plan:   {result['base_plan_id']}")
    print(f"Agency plan: {result['agency_plan_id']} (customer price {result['customer_price']})")
    if not args.account_ref:
        print("\n⚠️  Agency has no settlement account; transfers will be held until one is registered.\n")


if __name__ == "__main__":
    main()
