"""Transfer executor: move agency shares to their settlement accounts."""

import asyncio
import os
import socket
from collections import Counter
from datetime import timedelta
from enum import StrEnum
from uuid import uuid4

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.config import Settings
from settlement.database import get_session_context
from settlement.errors import GatewayPermanentError, GatewayTransientError
from settlement.integrations.gateway import PaymentGateway, TransferHandle
from settlement.models.alert import AlertKind
from settlement.models.base import utcnow
from settlement.models.commission import Commission, CommissionStatus
from settlement.models.payment import (
    Payment,
    PaymentSplit,
    PaymentStatus,
    SplitType,
    TransferStatus,
)
from settlement.services.directory import OrganizationDirectory
from settlement.services.operator import raise_alert

logger = structlog.get_logger()


class TransferOutcome(StrEnum):
    """Result of one ``execute_transfer`` call."""

    COMPLETED = "completed"
    HELD = "held"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"


def transfer_idempotency_key(split_id: str) -> str:
    """Gateway idempotency key for a split's transfer. One transfer per split, ever."""
    return f"split-{split_id}"


def backoff_delay(retry_count: int, base_seconds: int, cap_seconds: int) -> timedelta:
    """Exponential backoff: base, 2x base, 4x base, ... capped."""
    exponent = max(retry_count - 1, 0)
    return timedelta(seconds=min(cap_seconds, base_seconds * 2**exponent))


class TransferExecutor:
    """Executes transfers for splits in ``processing``.

    A worker must win a compare-and-set claim on the split before calling the
    gateway, and the gateway call carries an idempotency key derived from the
    split id, so two workers never both move money for the same split.
    """

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
        self.worker_id = f"{socket.gethostname()}:{os.getpid()}"

    async def execute_transfer(self, split_id: str) -> TransferOutcome:
        """
        Attempt the transfer for one split.

        Args:
            split_id: PaymentSplit id

        Returns:
            TransferOutcome
        """
        async with self.session_factory() as session:
            split = await session.get(PaymentSplit, split_id)
            payment = await session.get(Payment, split.payment_id) if split else None

        if split is None or payment is None:
            logger.warning("transfer_split_missing", split_id=split_id)
            return TransferOutcome.SKIPPED
        if (
            split.transfer_status != TransferStatus.PROCESSING.value
            or split.split_type != SplitType.AGENCY_REVENUE.value
            or payment.status != PaymentStatus.COMPLETED.value
        ):
            return TransferOutcome.SKIPPED

        destination = await self.directory.get_settlement_account_ref(split.to_organization_id)
        if not destination:
            await self._hold(split)
            return TransferOutcome.HELD

        token = f"{self.worker_id}:{uuid4().hex[:12]}"
        if not await self._claim(split.id, token):
            logger.info("transfer_claim_lost", split_id=split.id)
            return TransferOutcome.SKIPPED

        try:
            handle = await self.gateway.transfer(
                destination,
                split.amount,
                payment.currency,
                transfer_idempotency_key(split.id),
                metadata={"payment_id": payment.id, "split_id": split.id},
            )
        except GatewayTransientError as e:
            return await self._record_transient_failure(split, token, str(e))
        except GatewayPermanentError as e:
            return await self._record_permanent_failure(split, token, str(e))
        except Exception as e:
            # Counted like a transient failure so the retry bound still applies
            logger.exception("transfer_gateway_call_crashed", split_id=split.id)
            return await self._record_transient_failure(split, token, f"{type(e).__name__}: {e}")

        return await self._record_success(split, payment, token, handle)

    async def run_due_transfers(self) -> dict[str, int]:
        """
        Execute every due transfer once, with bounded concurrency.

        Returns:
            Count of splits per TransferOutcome
        """
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentSplit.id)
                .join(Payment, Payment.id == PaymentSplit.payment_id)
                .where(
                    PaymentSplit.transfer_status == TransferStatus.PROCESSING.value,
                    PaymentSplit.split_type == SplitType.AGENCY_REVENUE.value,
                    Payment.status == PaymentStatus.COMPLETED.value,
                    or_(PaymentSplit.next_attempt_at.is_(None), PaymentSplit.next_attempt_at <= now),
                    or_(PaymentSplit.locked_until.is_(None), PaymentSplit.locked_until < now),
                )
                .order_by(PaymentSplit.next_attempt_at)
                .limit(self.settings.transfer_batch_size)
            )
            split_ids = list(result.scalars().all())

        if not split_ids:
            return {}

        semaphore = asyncio.Semaphore(self.settings.transfer_worker_concurrency)

        async def run_one(split_id: str) -> str:
            async with semaphore:
                try:
                    return (await self.execute_transfer(split_id)).value
                except Exception:
                    # The claim lease expires and a later pass picks it up
                    logger.exception("transfer_attempt_crashed", split_id=split_id)
                    return "error"

        outcomes = await asyncio.gather(*(run_one(split_id) for split_id in split_ids))
        counts = dict(Counter(outcomes))
        logger.info("transfer_pass_complete", due=len(split_ids), **counts)
        return counts

    # === State changes ===

    async def _hold(self, split: PaymentSplit) -> None:
        """Beneficiary has no settlement account yet: stay processing, look again later."""
        next_attempt = utcnow() + timedelta(seconds=self.settings.settlement_account_poll_seconds)
        async with get_session_context(self.session_factory) as session:
            await session.execute(
                update(PaymentSplit)
                .where(
                    PaymentSplit.id == split.id,
                    PaymentSplit.transfer_status == TransferStatus.PROCESSING.value,
                )
                .values(next_attempt_at=next_attempt)
                .execution_options(synchronize_session=False)
            )
        logger.warning(
            "transfer_held_no_settlement_account",
            split_id=split.id,
            agency_id=split.to_organization_id,
        )

    async def _claim(self, split_id: str, token: str) -> bool:
        """Atomically take the split if it is processing and not leased by another worker."""
        now = utcnow()
        async with get_session_context(self.session_factory) as session:
            result = await session.execute(
                update(PaymentSplit)
                .where(
                    PaymentSplit.id == split_id,
                    PaymentSplit.transfer_status == TransferStatus.PROCESSING.value,
                    or_(PaymentSplit.locked_until.is_(None), PaymentSplit.locked_until < now),
                )
                .values(
                    locked_by=token,
                    locked_until=now + timedelta(seconds=self.settings.transfer_lease_seconds),
                    last_attempt_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def _load_claimed(self, session: AsyncSession, split_id: str, token: str) -> PaymentSplit | None:
        result = await session.execute(
            select(PaymentSplit)
            .where(
                PaymentSplit.id == split_id,
                PaymentSplit.transfer_status == TransferStatus.PROCESSING.value,
                PaymentSplit.locked_by == token,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _record_success(
        self,
        split: PaymentSplit,
        payment: Payment,
        token: str,
        handle: TransferHandle,
    ) -> TransferOutcome:
        now = utcnow()
        try:
            async with get_session_context(self.session_factory) as session:
                claimed = await self._load_claimed(session, split.id, token)
                if claimed is None:
                    # Lease expired and another worker took over; the shared
                    # idempotency key kept the gateway from paying twice.
                    logger.warning("transfer_lease_lost", split_id=split.id)
                    return TransferOutcome.SKIPPED

                claimed.transfer_status = TransferStatus.COMPLETED.value
                claimed.transferred_at = now
                claimed.gateway_transfer_id = handle.transfer_id
                claimed.failure_reason = None
                claimed.next_attempt_at = None
                claimed.locked_by = None
                claimed.locked_until = None

                existing = await session.execute(
                    select(Commission.id).where(Commission.payment_split_id == split.id)
                )
                if existing.scalar_one_or_none() is None:
                    session.add(
                        Commission(
                            agency_organization_id=split.to_organization_id,
                            customer_organization_id=split.from_organization_id,
                            payment_id=payment.id,
                            payment_split_id=split.id,
                            amount=split.amount,
                            rate=split.percentage,
                            currency=payment.currency,
                            status=CommissionStatus.PAID.value,
                            earned_at=now,
                            paid_at=now,
                            description=f"Commission from payment {payment.id}",
                        )
                    )
        except IntegrityError:
            # Commission for this split already exists
            logger.warning("commission_already_recorded", split_id=split.id)
            return TransferOutcome.SKIPPED

        logger.info(
            "transfer_completed",
            split_id=split.id,
            payment_id=payment.id,
            agency_id=split.to_organization_id,
            amount=str(split.amount),
            transfer_id=handle.transfer_id,
        )
        return TransferOutcome.COMPLETED

    async def _record_transient_failure(
        self, split: PaymentSplit, token: str, reason: str
    ) -> TransferOutcome:
        max_attempts = self.settings.transfer_max_attempts
        async with get_session_context(self.session_factory) as session:
            claimed = await self._load_claimed(session, split.id, token)
            if claimed is None:
                return TransferOutcome.SKIPPED

            claimed.retry_count += 1
            claimed.failure_reason = reason[:500]
            claimed.locked_by = None
            claimed.locked_until = None

            if claimed.retry_count >= max_attempts:
                claimed.transfer_status = TransferStatus.FAILED.value
                claimed.next_attempt_at = None
                await raise_alert(
                    session,
                    AlertKind.TRANSFER_FAILED,
                    f"Transfer for split {split.id} failed after {claimed.retry_count} attempts: {reason}",
                    reference_id=split.id,
                    payload={"payment_id": split.payment_id, "amount": str(split.amount)},
                )
                outcome = TransferOutcome.FAILED
            else:
                delay = backoff_delay(
                    claimed.retry_count,
                    self.settings.transfer_retry_base_seconds,
                    self.settings.transfer_retry_cap_seconds,
                )
                claimed.next_attempt_at = utcnow() + delay
                outcome = TransferOutcome.RETRY_SCHEDULED
            retry_count = claimed.retry_count

        logger.warning(
            "transfer_transient_failure",
            split_id=split.id,
            retry_count=retry_count,
            max_attempts=max_attempts,
            outcome=outcome.value,
            error=reason,
        )
        return outcome

    async def _record_permanent_failure(
        self, split: PaymentSplit, token: str, reason: str
    ) -> TransferOutcome:
        async with get_session_context(self.session_factory) as session:
            claimed = await self._load_claimed(session, split.id, token)
            if claimed is None:
                return TransferOutcome.SKIPPED

            claimed.transfer_status = TransferStatus.FAILED.value
            claimed.failure_reason = reason[:500]
            claimed.next_attempt_at = None
            claimed.locked_by = None
            claimed.locked_until = None
            await raise_alert(
                session,
                AlertKind.TRANSFER_FAILED,
                f"Transfer for split {split.id} rejected: {reason}",
                reference_id=split.id,
                payload={"payment_id": split.payment_id, "amount": str(split.amount)},
            )

        logger.error("transfer_permanent_failure", split_id=split.id, error=reason)
        return TransferOutcome.FAILED
