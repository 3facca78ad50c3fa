"""Pytest configuration and fixtures."""

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncGenerator

import pytest

# Set testing environment BEFORE any other imports
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_settlement.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET", "whsec_test")

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from settlement.config import Settings
from settlement.database import create_session_factory, get_session_context
from settlement.integrations.gateway import MockGateway
from settlement.models import Base, BillingPlan, Organization, OrganizationType
from settlement.services.container import build_services

WEBHOOK_SECRET = "whsec_test"


@dataclass
class World:
    """Ids of the seeded organizations and plans."""

    platform_id: str
    agency_id: str
    customer_id: str
    direct_customer_id: str
    unonboarded_agency_id: str
    unonboarded_customer_id: str
    plan_id: str
    margin_plan_id: str


@pytest.fixture
def test_settings() -> Settings:
    """Settings for tests, independent of the environment."""
    return Settings(
        _env_file=None,
        app_env="testing",
        database_url="sqlite+aiosqlite://",
        gateway_mode="mock",
        gateway_webhook_secret=WEBHOOK_SECRET,
        platform_organization_id="platform",
        transfer_retry_base_seconds=30,
        transfer_retry_cap_seconds=3600,
        transfer_max_attempts=10,
        transfer_lease_seconds=300,
        settlement_account_poll_seconds=300,
        charge_resume_after_seconds=120,
        transfer_worker_concurrency=4,
        scheduler_enabled=False,
        rate_limit_enabled=False,
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite database per test; each session gets its own connection."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def gateway() -> MockGateway:
    return MockGateway()


@pytest_asyncio.fixture
async def world(session_factory, test_settings) -> World:
    """Platform, an onboarded agency with a customer, a direct customer, and plans."""
    async with get_session_context(session_factory) as session:
        platform = Organization(
            id=test_settings.platform_organization_id,
            name="Platform",
            type=OrganizationType.PLATFORM.value,
        )
        agency = Organization(
            name="Acme Voice Agency",
            type=OrganizationType.AGENCY.value,
            parent_organization_id=platform.id,
            settlement_account_ref="acct_acme",
        )
        unonboarded = Organization(
            name="New Agency",
            type=OrganizationType.AGENCY.value,
            parent_organization_id=platform.id,
        )
        session.add_all([platform, agency, unonboarded])
        await session.flush()

        customer = Organization(
            name="Dental Clinic",
            type=OrganizationType.END_CUSTOMER.value,
            parent_organization_id=agency.id,
        )
        direct = Organization(
            name="Direct Customer",
            type=OrganizationType.END_CUSTOMER.value,
            parent_organization_id=None,
        )
        waiting = Organization(
            name="Law Firm",
            type=OrganizationType.END_CUSTOMER.value,
            parent_organization_id=unonboarded.id,
        )
        plan = BillingPlan(
            name="Voice Agent Pro",
            created_by_organization_id=platform.id,
            base_price=Decimal("100.00"),
            currency="usd",
            platform_fee_percentage=Decimal("30"),
            agency_margin_percentage=Decimal("0"),
        )
        margin_plan = BillingPlan(
            name="Voice Agent Pro (Acme)",
            created_by_organization_id=agency.id,
            base_price=Decimal("100.00"),
            currency="usd",
            platform_fee_percentage=Decimal("30"),
            agency_margin_percentage=Decimal("20"),
        )
        session.add_all([customer, direct, waiting, plan, margin_plan])
        await session.flush()

        return World(
            platform_id=platform.id,
            agency_id=agency.id,
            customer_id=customer.id,
            direct_customer_id=direct.id,
            unonboarded_agency_id=unonboarded.id,
            unonboarded_customer_id=waiting.id,
            plan_id=plan.id,
            margin_plan_id=margin_plan.id,
        )


@pytest.fixture
def services(session_factory, gateway, test_settings):
    return build_services(session_factory, gateway, test_settings)


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client bound to the test services."""
    from settlement.api.main import app

    app.state.services = services
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client
    app.state.services = None
