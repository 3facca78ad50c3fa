"""Subscription creation."""

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from settlement.database import get_session_context
from settlement.errors import GatewayError, PlanNotFound
from settlement.integrations.gateway import PaymentGateway
from settlement.models.base import utcnow
from settlement.models.billing import BillingPlan, Subscription, SubscriptionStatus
from settlement.services.directory import OrganizationDirectory

logger = structlog.get_logger()


class SubscriptionService:
    """Starts recurring billing for an organization on a plan."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        directory: OrganizationDirectory,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.directory = directory

    async def create_subscription(
        self,
        organization_id: str,
        plan_id: str,
        idempotency_key: str,
    ) -> tuple[Subscription, bool]:
        """
        Create a subscription, recording it locally before the gateway call.

        Renewal charges are settled from ``subscription.renewed`` webhooks.

        Args:
            organization_id: Subscribing organization
            plan_id: Billing plan
            idempotency_key: Client token identifying this request

        Returns:
            (subscription, created) where created is False for a repeat request

        Raises:
            PlanNotFound: Unknown or inactive plan
            OrganizationNotFound: Unknown organization
        """
        existing = await self._find(idempotency_key)
        if existing is not None:
            return await self._resume(existing), False

        org = await self.directory.get_organization(organization_id)
        plan = await self._get_plan(plan_id)

        subscription = Subscription(
            organization_id=org.id,
            plan_id=plan.id,
            status=SubscriptionStatus.INCOMPLETE.value,
            idempotency_key=idempotency_key,
        )
        try:
            async with get_session_context(self.session_factory) as session:
                session.add(subscription)
        except IntegrityError:
            existing = await self._find(idempotency_key)
            if existing is None:
                raise
            return await self._resume(existing), False

        return await self._activate(subscription, plan), True

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        async with self.session_factory() as session:
            return await session.get(Subscription, subscription_id)

    async def _get_plan(self, plan_id: str) -> BillingPlan:
        async with self.session_factory() as session:
            plan = await session.get(BillingPlan, plan_id)
        if plan is None or not plan.is_active:
            raise PlanNotFound(f"Plan {plan_id} not found")
        return plan

    async def _resume(self, subscription: Subscription) -> Subscription:
        """Finish a subscription whose first request never reached the gateway."""
        if subscription.status != SubscriptionStatus.INCOMPLETE.value:
            return subscription
        plan = await self._get_plan(subscription.plan_id)
        return await self._activate(subscription, plan)

    async def _activate(self, subscription: Subscription, plan: BillingPlan) -> Subscription:
        org_id = subscription.organization_id
        try:
            handle = await self.gateway.create_subscription(
                customer_ref=org_id,
                plan_ref=plan.id,
                amount=plan.customer_price(),
                currency=plan.currency,
                idempotency_key=subscription.idempotency_key,
                metadata={"subscription_id": subscription.id, "organization_id": org_id},
            )
        except GatewayError as e:
            logger.warning(
                "subscription_gateway_failed",
                subscription_id=subscription.id,
                error=str(e),
            )
            await self._set(
                subscription.id,
                status=SubscriptionStatus.CANCELED.value,
                canceled_at=utcnow(),
                failure_reason=(str(e) or type(e).__name__)[:500],
            )
            return await self._reload(subscription.id)

        await self._set(
            subscription.id,
            status=SubscriptionStatus.ACTIVE.value,
            external_subscription_id=handle.subscription_id,
            current_period_start=handle.current_period_start,
            current_period_end=handle.current_period_end,
        )
        logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            organization_id=org_id,
            plan_id=plan.id,
            external_subscription_id=handle.subscription_id,
        )
        return await self._reload(subscription.id)

    async def _find(self, idempotency_key: str) -> Subscription | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Subscription).where(Subscription.idempotency_key == idempotency_key)
            )
            return result.scalar_one_or_none()

    async def _set(self, subscription_id: str, **values) -> None:
        async with get_session_context(self.session_factory) as session:
            await session.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    Subscription.status == SubscriptionStatus.INCOMPLETE.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    async def _reload(self, subscription_id: str) -> Subscription:
        async with self.session_factory() as session:
            return await session.get(Subscription, subscription_id)
