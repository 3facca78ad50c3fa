"""Settlement orchestration: record the split, then charge."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.config import Settings
from settlement.database import get_session_context
from settlement.errors import (
    DuplicateRequest,
    GatewayError,
    GatewayTransientError,
    InvalidFeeConfiguration,
    PlanNotFound,
)
from settlement.integrations.gateway import PaymentGateway
from settlement.models.base import utcnow
from settlement.models.billing import BillingPlan
from settlement.models.payment import (
    Payment,
    PaymentSplit,
    PaymentStatus,
    SplitType,
    TransferStatus,
)
from settlement.services.directory import OrganizationDirectory
from settlement.services.split_calculator import SplitAmounts, compute_split

logger = structlog.get_logger()


@dataclass
class SettlementOutcome:
    """Result of ``initiate_settlement``."""

    payment: Payment
    splits: list[PaymentSplit]
    duplicate: bool = False


@dataclass(frozen=True)
class PaymentStatusView:
    """What a payer is allowed to see about a payment."""

    payment_id: str
    status: str
    gross_amount: Decimal
    currency: str
    created_at: datetime
    completed_at: datetime | None
    failed_at: datetime | None


def build_splits(
    split: SplitAmounts,
    payer_id: str,
    agency_id: str | None,
    platform_id: str,
) -> list[PaymentSplit]:
    """PaymentSplit rows for one payment, all ``pending``."""
    rows = [
        PaymentSplit(
            from_organization_id=payer_id,
            to_organization_id=platform_id,
            split_type=SplitType.PLATFORM_FEE.value,
            amount=split.platform_amount,
            percentage=split.platform_percentage,
            transfer_status=TransferStatus.PENDING.value,
            retry_count=0,
        )
    ]
    # A 100% platform fee leaves the agency nothing to transfer
    if agency_id is not None and split.agency_amount > 0:
        rows.append(
            PaymentSplit(
                from_organization_id=payer_id,
                to_organization_id=agency_id,
                split_type=SplitType.AGENCY_REVENUE.value,
                amount=split.agency_amount,
                percentage=split.agency_percentage,
                transfer_status=TransferStatus.PENDING.value,
                retry_count=0,
            )
        )
    return rows


class SettlementOrchestrator:
    """Creates payments and their splits, then asks the gateway to charge."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        directory: OrganizationDirectory,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.directory = directory
        self.settings = settings

    async def initiate_settlement(
        self,
        organization_id: str,
        plan_id: str,
        gross_amount: Decimal | None,
        idempotency_key: str,
        description: str | None = None,
    ) -> SettlementOutcome:
        """
        Record a pending payment with its splits, then charge the payer.

        The payment and splits are committed before the gateway is called, so
        a crash after the charge always leaves a record to reconcile against.
        Re-submitting the same idempotency key returns the existing payment.

        Args:
            organization_id: Paying organization
            plan_id: Billing plan being purchased
            gross_amount: Amount to charge; defaults to the plan's customer price
            idempotency_key: Client token identifying this logical request
            description: Optional note stored on the payment

        Returns:
            SettlementOutcome

        Raises:
            PlanNotFound: Unknown or inactive plan
            OrganizationNotFound: Unknown payer
            InvalidFeeConfiguration: The split cannot be computed
        """
        existing = await self._find_by_idempotency_key(idempotency_key)
        if existing is not None:
            return await self._resume(existing)

        plan = await self._get_plan(plan_id)
        payer = await self.directory.get_organization(organization_id)
        agency_id = await self.directory.resolve_parent_agency(payer.id)

        amount = plan.customer_price() if gross_amount is None else gross_amount
        split = compute_split(
            amount,
            plan.platform_fee_percentage,
            plan.agency_margin_percentage,
            has_agency=agency_id is not None,
            currency=plan.currency,
        )
        if split.gross_amount <= 0:
            raise InvalidFeeConfiguration("gross_amount must be positive")

        payment = Payment(
            organization_id=payer.id,
            plan_id=plan.id,
            gross_amount=split.gross_amount,
            platform_amount=split.platform_amount,
            agency_amount=split.agency_amount,
            currency=plan.currency,
            status=PaymentStatus.PENDING.value,
            idempotency_key=idempotency_key,
            description=description,
            splits=build_splits(
                split,
                payer_id=payer.id,
                agency_id=agency_id,
                platform_id=self.settings.platform_organization_id,
            ),
        )

        try:
            await self._persist_pending(payment)
        except DuplicateRequest as dup:
            return await self._resume(dup.existing)

        logger.info(
            "settlement_recorded",
            payment_id=payment.id,
            organization_id=organization_id,
            agency_id=agency_id,
            gross_amount=str(split.gross_amount),
            platform_amount=str(split.platform_amount),
            agency_amount=str(split.agency_amount),
        )

        return await self._submit_charge(payment)

    async def get_payment_status(self, payment_id: str) -> PaymentStatusView | None:
        """Payer-facing status; split and transfer details stay internal."""
        async with self.session_factory() as session:
            payment = await session.get(Payment, payment_id)
        if payment is None:
            return None
        return PaymentStatusView(
            payment_id=payment.id,
            status=payment.status,
            gross_amount=payment.gross_amount,
            currency=payment.currency,
            created_at=payment.created_at,
            completed_at=payment.completed_at,
            failed_at=payment.failed_at,
        )

    async def get_payment(self, payment_id: str) -> Payment | None:
        """Payment with its splits loaded (operator view)."""
        async with self.session_factory() as session:
            return await session.get(Payment, payment_id)

    # === Internals ===

    async def _get_plan(self, plan_id: str) -> BillingPlan:
        async with self.session_factory() as session:
            plan = await session.get(BillingPlan, plan_id)
        if plan is None or not plan.is_active:
            raise PlanNotFound(f"Plan {plan_id} not found")
        return plan

    async def _find_by_idempotency_key(self, idempotency_key: str) -> Payment | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment).where(Payment.idempotency_key == idempotency_key)
            )
            return result.scalar_one_or_none()

    async def _persist_pending(self, payment: Payment) -> None:
        """Insert the payment and its splits in one transaction."""
        try:
            async with get_session_context(self.session_factory) as session:
                session.add(payment)
        except IntegrityError:
            # Lost a race with a request carrying the same key
            existing = await self._find_by_idempotency_key(payment.idempotency_key)
            if existing is None:
                raise
            raise DuplicateRequest(existing)

    async def _resume(self, payment: Payment) -> SettlementOutcome:
        """Answer a repeated request with the payment it already created."""
        logger.info(
            "settlement_duplicate_request",
            payment_id=payment.id,
            idempotency_key=payment.idempotency_key,
            status=payment.status,
        )
        if (
            payment.status == PaymentStatus.PENDING.value
            and payment.external_transaction_id is None
            and await self._charge_abandoned(payment.id)
        ):
            # The first attempt never stored a gateway handle; the gateway
            # dedupes on the same key, so charging again is safe.
            outcome = await self._submit_charge(payment, resumed=True)
            outcome.duplicate = True
            return outcome
        return await self._load_outcome(payment.id, duplicate=True)

    async def _charge_abandoned(self, payment_id: str) -> bool:
        """True once a pending payment is too old for its first charge to still be in flight."""
        cutoff = utcnow() - timedelta(seconds=self.settings.charge_resume_after_seconds)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment.id).where(Payment.id == payment_id, Payment.created_at < cutoff)
            )
            return result.scalar_one_or_none() is not None

    async def _submit_charge(self, payment: Payment, resumed: bool = False) -> SettlementOutcome:
        try:
            handle = await self.gateway.charge(
                payment.gross_amount,
                payment.currency,
                payment.idempotency_key,
                metadata={
                    "payment_id": payment.id,
                    "organization_id": payment.organization_id,
                },
            )
        except GatewayError as e:
            if resumed and isinstance(e, GatewayTransientError):
                # Outcome unknown: the original charge may still complete,
                # and its webhook settles the payment.
                logger.warning(
                    "settlement_resumed_charge_deferred",
                    payment_id=payment.id,
                    error=str(e),
                    code=e.code,
                )
                return await self._load_outcome(payment.id)
            logger.warning(
                "settlement_charge_failed",
                payment_id=payment.id,
                error=str(e),
                code=e.code,
            )
            await self._mark_failed(payment.id, str(e) or type(e).__name__)
            return await self._load_outcome(payment.id)

        await self._record_transaction(payment.id, handle.transaction_id)

        logger.info(
            "settlement_charge_submitted",
            payment_id=payment.id,
            transaction_id=handle.transaction_id,
        )
        return await self._load_outcome(payment.id)

    async def _record_transaction(self, payment_id: str, transaction_id: str) -> None:
        async with get_session_context(self.session_factory) as session:
            await session.execute(
                update(Payment)
                .where(
                    Payment.id == payment_id,
                    Payment.external_transaction_id.is_(None),
                )
                .values(external_transaction_id=transaction_id)
                .execution_options(synchronize_session=False)
            )

    async def _mark_failed(self, payment_id: str, reason: str) -> None:
        """Fail a payment that never reached the gateway, and its splits with it."""
        now = utcnow()
        async with get_session_context(self.session_factory) as session:
            result = await session.execute(
                update(Payment)
                .where(
                    Payment.id == payment_id,
                    Payment.status == PaymentStatus.PENDING.value,
                )
                .values(
                    status=PaymentStatus.FAILED.value,
                    failed_at=now,
                    failure_reason=reason[:500],
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # A webhook settled it first
                return
            await session.execute(
                update(PaymentSplit)
                .where(
                    PaymentSplit.payment_id == payment_id,
                    PaymentSplit.transfer_status == TransferStatus.PENDING.value,
                )
                .values(
                    transfer_status=TransferStatus.FAILED.value,
                    failure_reason=reason[:500],
                )
                .execution_options(synchronize_session=False)
            )

    async def _load_outcome(self, payment_id: str, duplicate: bool = False) -> SettlementOutcome:
        async with self.session_factory() as session:
            payment = await session.get(Payment, payment_id)
            splits = list(payment.splits)
        return SettlementOutcome(payment=payment, splits=splits, duplicate=duplicate)
