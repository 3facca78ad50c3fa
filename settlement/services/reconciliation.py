"""Webhook reconciliation: apply gateway events to payments and subscriptions."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.config import Settings
from settlement.database import get_session_context
from settlement.errors import (
    InvalidEventPayload,
    InvalidFeeConfiguration,
    UnknownTransactionReference,
)
from settlement.models.alert import AlertKind
from settlement.models.base import utcnow
from settlement.models.billing import BillingPlan, Subscription, SubscriptionStatus
from settlement.models.payment import (
    Payment,
    PaymentSplit,
    PaymentStatus,
    ProcessedWebhookEvent,
    SplitType,
    TransferStatus,
)
from settlement.money import from_minor_units
from settlement.services.directory import OrganizationDirectory
from settlement.services.operator import raise_alert
from settlement.services.orchestrator import build_splits
from settlement.services.split_calculator import compute_split

logger = structlog.get_logger()


class GatewayEventType(StrEnum):
    """Gateway event types this service acts on."""

    CHARGE_SUCCEEDED = "charge.succeeded"
    CHARGE_FAILED = "charge.failed"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"


CHARGE_EVENTS = {GatewayEventType.CHARGE_SUCCEEDED, GatewayEventType.CHARGE_FAILED}
SUBSCRIPTION_EVENTS = {
    GatewayEventType.SUBSCRIPTION_RENEWED,
    GatewayEventType.SUBSCRIPTION_CANCELLED,
}


class EventOutcome(StrEnum):
    """How an event was handled."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    ALERTED = "alerted"
    UNMATCHED = "unmatched"


class GatewayEvent(BaseModel):
    """Signed webhook body: ``{eventId, type, transactionId, payload}``."""

    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(..., alias="eventId", min_length=1)
    type: str = Field(..., min_length=1)
    transaction_id: str = Field(..., alias="transactionId", min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def idempotency_key(self) -> str | None:
        """Idempotency key the gateway echoes back from the original request."""
        metadata = self.payload.get("metadata") or {}
        return self.payload.get("idempotency_key") or metadata.get("idempotency_key")


def _parse_timestamp(event: GatewayEvent, key: str) -> datetime | None:
    value = event.payload.get(key)
    if value is None:
        return None
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(value, UTC)
        parsed = datetime.fromisoformat(str(value))
    except (ValueError, OverflowError, OSError) as e:
        raise InvalidEventPayload(event.event_id, f"{key}={value!r}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _parse_amount(event: GatewayEvent, key: str) -> int:
    """Positive amount in minor units."""
    value = event.payload.get(key)
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidEventPayload(event.event_id, f"{key}={value!r}")
    return value


class WebhookReconciler:
    """Applies gateway events exactly once each.

    Every event is recorded in ``processed_webhook_events`` in the same
    transaction as the state change it causes, so a redelivered event id is
    acknowledged without side effects and a crash leaves it unrecorded.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        directory: OrganizationDirectory,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.directory = directory
        self.settings = settings

    async def handle_gateway_event(self, event: GatewayEvent) -> EventOutcome:
        """
        Apply one gateway event.

        Args:
            event: Verified gateway event

        Returns:
            EventOutcome. ``UNMATCHED`` means the event referenced no local
            payment or subscription and was queued for an operator.
            ``ALERTED`` covers events recorded without effect that an operator
            must look at, such as a payload that cannot be applied.
        """
        try:
            async with get_session_context(self.session_factory) as session:
                if await session.get(ProcessedWebhookEvent, event.event_id) is not None:
                    outcome = EventOutcome.DUPLICATE
                else:
                    outcome = await self._dispatch(session, event)
                    session.add(
                        ProcessedWebhookEvent(
                            event_id=event.event_id,
                            event_type=event.type,
                            transaction_id=event.transaction_id,
                            outcome=outcome.value,
                        )
                    )
        except IntegrityError:
            # Concurrent delivery of the same event id won the insert
            outcome = EventOutcome.DUPLICATE
        except UnknownTransactionReference as e:
            await self._queue_unmatched(event, e)
            return EventOutcome.UNMATCHED
        except (InvalidEventPayload, InvalidFeeConfiguration) as e:
            outcome = await self._quarantine(event, e)

        logger.info(
            "gateway_event_handled",
            event_id=event.event_id,
            event_type=event.type,
            transaction_id=event.transaction_id,
            outcome=outcome.value,
        )
        return outcome

    async def _dispatch(self, session: AsyncSession, event: GatewayEvent) -> EventOutcome:
        if event.type in CHARGE_EVENTS:
            payment = await self._find_payment(session, event)
            if payment is None:
                raise UnknownTransactionReference(event.transaction_id, event.event_id)
            if event.type == GatewayEventType.CHARGE_SUCCEEDED:
                return await self._charge_succeeded(session, payment, event)
            return await self._charge_failed(session, payment, event)

        if event.type in SUBSCRIPTION_EVENTS:
            subscription = await self._find_subscription(session, event)
            if subscription is None:
                raise UnknownTransactionReference(event.transaction_id, event.event_id)
            if event.type == GatewayEventType.SUBSCRIPTION_RENEWED:
                return await self._subscription_renewed(session, subscription, event)
            return await self._subscription_cancelled(session, subscription, event)

        logger.info("gateway_event_type_ignored", event_id=event.event_id, event_type=event.type)
        return EventOutcome.IGNORED

    # === Lookups ===

    async def _find_payment(self, session: AsyncSession, event: GatewayEvent) -> Payment | None:
        result = await session.execute(
            select(Payment)
            .where(Payment.external_transaction_id == event.transaction_id)
            .with_for_update()
        )
        payment = result.scalar_one_or_none()
        if payment is not None or not event.idempotency_key:
            return payment

        # The webhook can arrive before the orchestrator stores the handle
        result = await session.execute(
            select(Payment)
            .where(Payment.idempotency_key == event.idempotency_key)
            .with_for_update()
        )
        payment = result.scalar_one_or_none()
        if payment is not None and payment.external_transaction_id is None:
            payment.external_transaction_id = event.transaction_id
            logger.info(
                "payment_transaction_backfilled",
                payment_id=payment.id,
                transaction_id=event.transaction_id,
            )
        return payment

    async def _find_subscription(
        self, session: AsyncSession, event: GatewayEvent
    ) -> Subscription | None:
        result = await session.execute(
            select(Subscription)
            .where(Subscription.external_subscription_id == event.transaction_id)
            .with_for_update()
        )
        subscription = result.scalar_one_or_none()
        if subscription is not None or not event.idempotency_key:
            return subscription

        result = await session.execute(
            select(Subscription)
            .where(Subscription.idempotency_key == event.idempotency_key)
            .with_for_update()
        )
        subscription = result.scalar_one_or_none()
        if subscription is not None and subscription.external_subscription_id is None:
            subscription.external_subscription_id = event.transaction_id
        return subscription

    # === Charges ===

    async def _charge_succeeded(
        self, session: AsyncSession, payment: Payment, event: GatewayEvent
    ) -> EventOutcome:
        if payment.status == PaymentStatus.FAILED.value:
            await raise_alert(
                session,
                AlertKind.CHARGE_AFTER_FAILURE,
                f"Gateway reports charge {event.transaction_id} succeeded but payment "
                f"{payment.id} is already failed",
                reference_id=payment.id,
                payload={"event_id": event.event_id, "transaction_id": event.transaction_id},
            )
            return EventOutcome.ALERTED
        if payment.status != PaymentStatus.PENDING.value:
            return EventOutcome.IGNORED

        if not await self._complete_payment(session, payment.id):
            return EventOutcome.IGNORED

        logger.info(
            "payment_completed",
            payment_id=payment.id,
            transaction_id=event.transaction_id,
            gross_amount=str(payment.gross_amount),
        )
        return EventOutcome.APPLIED

    async def _charge_failed(
        self, session: AsyncSession, payment: Payment, event: GatewayEvent
    ) -> EventOutcome:
        if payment.status != PaymentStatus.PENDING.value:
            return EventOutcome.IGNORED

        reason = (
            event.payload.get("failure_message")
            or event.payload.get("failure_code")
            or "Charge failed"
        )
        result = await session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING.value)
            .values(
                status=PaymentStatus.FAILED.value,
                failed_at=utcnow(),
                failure_reason=str(reason)[:500],
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return EventOutcome.IGNORED

        # Splits stay pending: nothing will ever be transferred for them
        logger.info("payment_failed", payment_id=payment.id, reason=reason)
        return EventOutcome.APPLIED

    async def _complete_payment(self, session: AsyncSession, payment_id: str) -> bool:
        """Move a pending payment to completed and promote its splits."""
        now = utcnow()
        result = await session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .values(status=PaymentStatus.COMPLETED.value, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        # The platform fee already sits in the platform balance
        await session.execute(
            update(PaymentSplit)
            .where(
                PaymentSplit.payment_id == payment_id,
                PaymentSplit.split_type == SplitType.PLATFORM_FEE.value,
                PaymentSplit.transfer_status == TransferStatus.PENDING.value,
            )
            .values(transfer_status=TransferStatus.COMPLETED.value, transferred_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            update(PaymentSplit)
            .where(
                PaymentSplit.payment_id == payment_id,
                PaymentSplit.split_type == SplitType.AGENCY_REVENUE.value,
                PaymentSplit.transfer_status == TransferStatus.PENDING.value,
            )
            .values(transfer_status=TransferStatus.PROCESSING.value, next_attempt_at=now)
            .execution_options(synchronize_session=False)
        )
        return True

    # === Subscriptions ===

    async def _subscription_renewed(
        self, session: AsyncSession, subscription: Subscription, event: GatewayEvent
    ) -> EventOutcome:
        if subscription.status == SubscriptionStatus.CANCELED.value:
            logger.warning(
                "renewal_for_canceled_subscription",
                subscription_id=subscription.id,
                event_id=event.event_id,
            )
            return EventOutcome.IGNORED

        period_start = _parse_timestamp(event, "current_period_start")
        period_end = _parse_timestamp(event, "current_period_end")
        charge_id = event.payload.get("charge_id")
        amount = None
        if charge_id and event.payload.get("amount") is not None:
            amount = _parse_amount(event, "amount")

        subscription.status = SubscriptionStatus.ACTIVE.value
        if period_start is not None:
            subscription.current_period_start = period_start
        if period_end is not None:
            subscription.current_period_end = period_end

        if amount is not None:
            await self._record_renewal_payment(session, subscription, str(charge_id), amount)

        logger.info(
            "subscription_renewed",
            subscription_id=subscription.id,
            period_end=str(subscription.current_period_end),
        )
        return EventOutcome.APPLIED

    async def _subscription_cancelled(
        self, session: AsyncSession, subscription: Subscription, event: GatewayEvent
    ) -> EventOutcome:
        if subscription.status == SubscriptionStatus.CANCELED.value:
            return EventOutcome.IGNORED
        subscription.status = SubscriptionStatus.CANCELED.value
        subscription.canceled_at = _parse_timestamp(event, "canceled_at") or utcnow()
        logger.info("subscription_cancelled", subscription_id=subscription.id)
        return EventOutcome.APPLIED

    async def _record_renewal_payment(
        self,
        session: AsyncSession,
        subscription: Subscription,
        charge_id: str,
        amount_minor: int,
    ) -> None:
        """Book a renewal charge the gateway collected on its own as a completed payment."""
        result = await session.execute(
            select(Payment.id).where(Payment.external_transaction_id == charge_id)
        )
        if result.scalar_one_or_none() is not None:
            return

        plan = await session.get(BillingPlan, subscription.plan_id)
        agency_id = await self.directory.resolve_parent_agency(subscription.organization_id)
        split = compute_split(
            from_minor_units(amount_minor, plan.currency),
            plan.platform_fee_percentage,
            plan.agency_margin_percentage,
            has_agency=agency_id is not None,
            currency=plan.currency,
        )
        payment = Payment(
            organization_id=subscription.organization_id,
            plan_id=plan.id,
            subscription_id=subscription.id,
            gross_amount=split.gross_amount,
            platform_amount=split.platform_amount,
            agency_amount=split.agency_amount,
            currency=plan.currency,
            status=PaymentStatus.PENDING.value,
            idempotency_key=f"renewal-{charge_id}",
            external_transaction_id=charge_id,
            description=f"Renewal of subscription {subscription.id}",
            splits=build_splits(
                split,
                payer_id=subscription.organization_id,
                agency_id=agency_id,
                platform_id=self.settings.platform_organization_id,
            ),
        )
        session.add(payment)
        await session.flush()
        await self._complete_payment(session, payment.id)

        logger.info(
            "renewal_payment_recorded",
            payment_id=payment.id,
            subscription_id=subscription.id,
            gross_amount=str(split.gross_amount),
        )

    # === Unmatched ===

    async def _queue_unmatched(self, event: GatewayEvent, error: UnknownTransactionReference) -> None:
        """Put the event in the operator queue without marking it processed."""
        try:
            async with get_session_context(self.session_factory) as session:
                await raise_alert(
                    session,
                    AlertKind.UNKNOWN_TRANSACTION,
                    str(error),
                    reference_id=event.transaction_id,
                    event_id=event.event_id,
                    payload=event.model_dump(by_alias=True),
                )
        except IntegrityError:
            logger.info("unmatched_event_already_queued", event_id=event.event_id)

    async def _quarantine(self, event: GatewayEvent, error: Exception) -> EventOutcome:
        """Record an event that cannot be applied and hand it to an operator.

        The event is marked processed so the gateway stops redelivering it;
        the alert keeps the full body for a manual fix.
        """
        logger.error(
            "gateway_event_rejected",
            event_id=event.event_id,
            event_type=event.type,
            transaction_id=event.transaction_id,
            error=str(error),
        )
        try:
            async with get_session_context(self.session_factory) as session:
                await raise_alert(
                    session,
                    AlertKind.INVALID_EVENT,
                    str(error),
                    reference_id=event.transaction_id,
                    event_id=event.event_id,
                    payload=event.model_dump(by_alias=True),
                )
                session.add(
                    ProcessedWebhookEvent(
                        event_id=event.event_id,
                        event_type=event.type,
                        transaction_id=event.transaction_id,
                        outcome=EventOutcome.ALERTED.value,
                    )
                )
        except IntegrityError:
            return EventOutcome.DUPLICATE
        return EventOutcome.ALERTED
