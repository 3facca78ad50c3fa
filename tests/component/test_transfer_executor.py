"""Component tests for the transfer executor."""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from settlement.database import get_session_context
from settlement.errors import GatewayPermanentError, GatewayTransientError
from settlement.integrations.gateway import GatewayClient, MockGateway
from settlement.models import Commission, OperatorAlert, PaymentSplit
from settlement.services.container import build_services
from settlement.services.reconciliation import GatewayEvent
from settlement.services.transfer_executor import (
    TransferExecutor,
    TransferOutcome,
    backoff_delay,
)


@dataclass
class SlowGateway(MockGateway):
    """Gateway whose transfers take long enough for workers to overlap."""

    delay: float = 0.2

    async def transfer(self, destination_ref, amount, currency, idempotency_key, metadata=None):
        await asyncio.sleep(self.delay)
        return await super().transfer(destination_ref, amount, currency, idempotency_key, metadata)


async def completed_payment(services, world, key="order-1", organization_id=None):
    """Settle $100 and deliver the charge.succeeded webhook; return the agency split id."""
    outcome = await services.orchestrator.initiate_settlement(
        organization_id or world.customer_id, world.plan_id, Decimal("100.00"), key
    )
    payment = outcome.payment
    await services.reconciler.handle_gateway_event(
        GatewayEvent(
            eventId=f"evt_{key}",
            type="charge.succeeded",
            transactionId=payment.external_transaction_id,
        )
    )
    agency_split = next(split for split in outcome.splits if split.split_type == "agency_revenue")
    return payment, agency_split.id


async def get_split(services, split_id) -> PaymentSplit:
    async with services.session_factory() as session:
        return await session.get(PaymentSplit, split_id)


async def make_due(services, split_id):
    """Skip the wait before the next attempt."""
    async with get_session_context(services.session_factory) as session:
        split = await session.get(PaymentSplit, split_id)
        split.next_attempt_at = datetime.now(UTC) - timedelta(seconds=1)


class TestBackoff:
    """Tests for backoff_delay."""

    def test_doubles_from_base(self):
        assert backoff_delay(1, 30, 3600) == timedelta(seconds=30)
        assert backoff_delay(2, 30, 3600) == timedelta(seconds=60)
        assert backoff_delay(3, 30, 3600) == timedelta(seconds=120)

    def test_capped(self):
        assert backoff_delay(8, 30, 3600) == timedelta(seconds=3600)
        assert backoff_delay(30, 30, 3600) == timedelta(seconds=3600)


class TestExecuteTransfer:
    """Tests for TransferExecutor."""

    @pytest.mark.asyncio
    async def test_hundred_dollars_thirty_percent(self, services, world, gateway):
        """Agency receives $70, platform keeps $30, one commission of $70."""
        payment, split_id = await completed_payment(services, world)

        counts = await services.executor.run_due_transfers()

        assert counts == {"completed": 1}
        assert len(gateway.transfer_calls) == 1
        call = gateway.transfer_calls[0]
        assert call["destination"] == "acct_acme"
        assert call["amount"] == Decimal("70.00")
        assert call["idempotency_key"] == f"split-{split_id}"

        split = await get_split(services, split_id)
        assert split.transfer_status == "completed"
        assert split.gateway_transfer_id == gateway.transfers[f"split-{split_id}"].transfer_id
        assert split.transferred_at is not None
        assert split.locked_by is None

        async with services.session_factory() as session:
            commissions = (await session.execute(select(Commission))).scalars().all()
        assert len(commissions) == 1
        assert commissions[0].amount == Decimal("70.00")
        assert commissions[0].rate == Decimal("70")
        assert commissions[0].agency_organization_id == world.agency_id
        assert commissions[0].customer_organization_id == world.customer_id
        assert commissions[0].status == "paid"

        now = datetime.now(UTC)
        total = await services.commissions.aggregate(
            world.agency_id, now - timedelta(days=1), now + timedelta(days=1)
        )
        assert total == Decimal("70.00")

    @pytest.mark.asyncio
    async def test_pending_payment_is_not_transferred(self, services, world, gateway):
        outcome = await services.orchestrator.initiate_settlement(
            world.customer_id, world.plan_id, Decimal("100.00"), "order-pending"
        )
        agency_split = next(s for s in outcome.splits if s.split_type == "agency_revenue")

        assert await services.executor.execute_transfer(agency_split.id) == TransferOutcome.SKIPPED
        assert await services.executor.run_due_transfers() == {}
        assert gateway.transfer_calls == []

    @pytest.mark.asyncio
    async def test_completed_split_is_not_transferred_again(self, services, world, gateway):
        _, split_id = await completed_payment(services, world)
        await services.executor.run_due_transfers()

        outcome = await services.executor.execute_transfer(split_id)

        assert outcome == TransferOutcome.SKIPPED
        assert len(gateway.transfer_calls) == 1

    @pytest.mark.asyncio
    async def test_leased_split_is_skipped(self, services, world, gateway):
        _, split_id = await completed_payment(services, world)
        async with get_session_context(services.session_factory) as session:
            split = await session.get(PaymentSplit, split_id)
            split.locked_by = "other-worker"
            split.locked_until = datetime.now(UTC) + timedelta(minutes=5)

        outcome = await services.executor.execute_transfer(split_id)

        assert outcome == TransferOutcome.SKIPPED
        assert gateway.transfer_calls == []

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self, services, world, gateway):
        _, split_id = await completed_payment(services, world)
        async with get_session_context(services.session_factory) as session:
            split = await session.get(PaymentSplit, split_id)
            split.locked_by = "crashed-worker"
            split.locked_until = datetime.now(UTC) - timedelta(seconds=1)

        outcome = await services.executor.execute_transfer(split_id)

        assert outcome == TransferOutcome.COMPLETED


class TestAtMostOnce:
    """Concurrent workers never transfer the same split twice."""

    @pytest.mark.asyncio
    async def test_concurrent_workers_single_transfer(
        self, session_factory, world, test_settings
    ):
        gateway = SlowGateway()
        services = build_services(session_factory, gateway, test_settings)
        _, split_id = await completed_payment(services, world)

        workers = [
            TransferExecutor(session_factory, gateway, services.directory, test_settings)
            for _ in range(4)
        ]
        outcomes = await asyncio.gather(*(worker.execute_transfer(split_id) for worker in workers))

        assert outcomes.count(TransferOutcome.COMPLETED) == 1
        assert outcomes.count(TransferOutcome.SKIPPED) == 3
        assert len(gateway.transfer_calls) == 1
        assert len(gateway.transfers) == 1

        async with session_factory() as session:
            commissions = await session.scalar(select(func.count(Commission.id)))
        assert commissions == 1

    @pytest.mark.asyncio
    async def test_overlapping_passes(self, session_factory, world, test_settings):
        gateway = SlowGateway(delay=0.05)
        services = build_services(session_factory, gateway, test_settings)
        for i in range(5):
            await completed_payment(services, world, key=f"order-{i}")

        other = TransferExecutor(session_factory, gateway, services.directory, test_settings)
        first, second = await asyncio.gather(
            services.executor.run_due_transfers(),
            other.run_due_transfers(),
        )

        assert first.get("completed", 0) + second.get("completed", 0) == 5
        assert len(gateway.transfers) == 5
        assert len({call["idempotency_key"] for call in gateway.transfer_calls}) == len(gateway.transfer_calls)


class TestSettlementAccountHold:
    """Agencies without a settlement account."""

    @pytest.mark.asyncio
    async def test_held_until_account_registered(self, services, world, gateway):
        _, split_id = await completed_payment(
            services, world, key="order-hold", organization_id=world.unonboarded_customer_id
        )

        outcome = await services.executor.execute_transfer(split_id)

        assert outcome == TransferOutcome.HELD
        assert gateway.transfer_calls == []
        split = await get_split(services, split_id)
        assert split.transfer_status == "processing"
        assert split.retry_count == 0

        # Not due again until the hold interval passes
        assert await services.executor.run_due_transfers() == {}

        await services.directory.register_settlement_account(world.unonboarded_agency_id, "acct_new")
        counts = await services.executor.run_due_transfers()

        assert counts == {"completed": 1}
        assert gateway.transfer_calls[0]["destination"] == "acct_new"
        split = await get_split(services, split_id)
        assert split.transfer_status == "completed"
        assert split.retry_count == 0


class TestRetries:
    """Transient and permanent gateway failures."""

    @pytest.mark.asyncio
    async def test_transient_failure_schedules_backoff(self, services, world, gateway):
        _, split_id = await completed_payment(services, world)
        gateway.transfer_failures.append(GatewayTransientError("gateway timeout"))
        before = datetime.now(UTC)

        outcome = await services.executor.execute_transfer(split_id)

        assert outcome == TransferOutcome.RETRY_SCHEDULED
        split = await get_split(services, split_id)
        assert split.transfer_status == "processing"
        assert split.retry_count == 1
        assert split.failure_reason == "gateway timeout"
        assert split.locked_by is None

        async with services.session_factory() as session:
            due_later = await session.scalar(
                select(func.count(PaymentSplit.id)).where(
                    PaymentSplit.id == split_id,
                    PaymentSplit.next_attempt_at >= before + timedelta(seconds=29),
                    PaymentSplit.next_attempt_at <= before + timedelta(seconds=60),
                )
            )
        assert due_later == 1

        # Not due yet
        assert await services.executor.run_due_transfers() == {}

    @pytest.mark.asyncio
    async def test_retry_bound(self, services, world, gateway, test_settings):
        _, split_id = await completed_payment(services, world)
        attempts = test_settings.transfer_max_attempts
        gateway.transfer_failures.extend(
            GatewayTransientError("service unavailable") for _ in range(attempts + 5)
        )

        outcomes = [await services.executor.execute_transfer(split_id) for _ in range(attempts)]

        assert outcomes[:-1] == [TransferOutcome.RETRY_SCHEDULED] * (attempts - 1)
        assert outcomes[-1] == TransferOutcome.FAILED
        split = await get_split(services, split_id)
        assert split.transfer_status == "failed"
        assert split.retry_count == attempts

        # Terminal: no further gateway calls
        assert await services.executor.execute_transfer(split_id) == TransferOutcome.SKIPPED
        assert len(gateway.transfer_calls) == attempts

        alerts = await services.operator.list_alerts()
        assert [alert.kind for alert in alerts] == ["transfer_failed"]
        assert alerts[0].reference_id == split_id

        failed = await services.operator.list_failed_transfers()
        assert [s.id for s in failed] == [split_id]

        async with services.session_factory() as session:
            assert await session.scalar(select(func.count(Commission.id))) == 0

    @pytest.mark.asyncio
    async def test_permanent_failure_is_terminal(self, services, world, gateway):
        _, split_id = await completed_payment(services, world)
        gateway.transfer_failures.append(GatewayPermanentError("account closed", code="account_closed"))

        outcome = await services.executor.execute_transfer(split_id)

        assert outcome == TransferOutcome.FAILED
        split = await get_split(services, split_id)
        assert split.transfer_status == "failed"
        assert split.retry_count == 0
        assert split.failure_reason == "account closed"

        async with services.session_factory() as session:
            alerts = await session.scalar(select(func.count(OperatorAlert.id)))
        assert alerts == 1

    @pytest.mark.asyncio
    async def test_retry_succeeds_with_same_idempotency_key(self, services, world, gateway):
        _, split_id = await completed_payment(services, world)
        gateway.transfer_failures.append(GatewayTransientError("timeout"))

        await services.executor.execute_transfer(split_id)
        outcome = await services.executor.execute_transfer(split_id)

        assert outcome == TransferOutcome.COMPLETED
        keys = {call["idempotency_key"] for call in gateway.transfer_calls}
        assert keys == {f"split-{split_id}"}
        split = await get_split(services, split_id)
        assert split.retry_count == 1

    @pytest.mark.asyncio
    async def test_malformed_gateway_response_reaches_retry_bound(
        self, services, world, session_factory, test_settings
    ):
        _, split_id = await completed_payment(services, world)
        client = GatewayClient(base_url="https://gateway.test/v1", api_key="sk_test")
        client._client = httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, text="<html>bad gateway</html>")
            ),
            headers=client.headers,
        )
        executor = TransferExecutor(session_factory, client, services.directory, test_settings)
        attempts = test_settings.transfer_max_attempts

        for attempt in range(1, attempts + 1):
            counts = await executor.run_due_transfers()
            split = await get_split(services, split_id)
            assert split.retry_count == attempt
            assert split.locked_by is None
            if attempt < attempts:
                assert counts == {"retry_scheduled": 1}
                await make_due(services, split_id)
        await client.close()

        assert counts == {"failed": 1}
        assert split.transfer_status == "failed"
        assert "Malformed" in split.failure_reason
        alerts = await services.operator.list_alerts()
        assert [alert.kind for alert in alerts] == ["transfer_failed"]

    @pytest.mark.asyncio
    async def test_unexpected_gateway_error_counts_as_attempt(self, services, world, gateway):
        _, split_id = await completed_payment(services, world)
        gateway.transfer_failures.append(KeyError("id"))

        outcome = await services.executor.execute_transfer(split_id)

        assert outcome == TransferOutcome.RETRY_SCHEDULED
        split = await get_split(services, split_id)
        assert split.transfer_status == "processing"
        assert split.retry_count == 1
        assert split.failure_reason == "KeyError: 'id'"
        assert split.locked_by is None
        assert split.locked_until is None


class TestIdempotentWebhook:
    """A redelivered charge.succeeded leads to exactly one transfer and one commission."""

    @pytest.mark.asyncio
    async def test_redelivery_then_transfers(self, services, world, gateway):
        outcome = await services.orchestrator.initiate_settlement(
            world.customer_id, world.plan_id, Decimal("100.00"), "order-redelivered"
        )
        payment = outcome.payment
        event = GatewayEvent(
            eventId="evt_redelivered",
            type="charge.succeeded",
            transactionId=payment.external_transaction_id,
        )

        await services.reconciler.handle_gateway_event(event)
        await services.reconciler.handle_gateway_event(event)

        async with services.session_factory() as session:
            processing = await session.scalar(
                select(func.count(PaymentSplit.id)).where(
                    PaymentSplit.payment_id == payment.id,
                    PaymentSplit.split_type == "agency_revenue",
                    PaymentSplit.transfer_status == "processing",
                )
            )
        assert processing == 1

        first = await services.executor.run_due_transfers()
        second = await services.executor.run_due_transfers()

        assert first == {"completed": 1}
        assert second == {}
        assert len(gateway.transfer_calls) == 1
        async with services.session_factory() as session:
            commissions = await session.scalar(
                select(func.count(Commission.id)).where(Commission.payment_id == payment.id)
            )
        assert commissions == 1


class TestRepeatedHolds:
    """A held split stays processing however often the executor looks at it."""

    @pytest.mark.asyncio
    async def test_held_across_executor_runs(self, services, world, gateway):
        _, split_id = await completed_payment(
            services, world, key="order-held", organization_id=world.unonboarded_customer_id
        )

        for _ in range(5):
            counts = await services.executor.run_due_transfers()
            assert counts == {"held": 1}
            split = await get_split(services, split_id)
            assert split.transfer_status == "processing"
            assert split.retry_count == 0
            assert split.failure_reason is None
            await make_due(services, split_id)

        assert gateway.transfer_calls == []
        assert await services.operator.list_alerts() == []
