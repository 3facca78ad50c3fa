"""Wiring for the settlement services."""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.config import Settings
from settlement.integrations.gateway import PaymentGateway
from settlement.services.commissions import CommissionAggregator
from settlement.services.directory import SqlOrganizationDirectory
from settlement.services.operator import OperatorQueue
from settlement.services.orchestrator import SettlementOrchestrator
from settlement.services.reconciliation import WebhookReconciler
from settlement.services.subscriptions import SubscriptionService
from settlement.services.transfer_executor import TransferExecutor


@dataclass
class Services:
    """Everything the API and scheduler need, built once per process."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    gateway: PaymentGateway
    directory: SqlOrganizationDirectory
    orchestrator: SettlementOrchestrator
    reconciler: WebhookReconciler
    executor: TransferExecutor
    commissions: CommissionAggregator
    subscriptions: SubscriptionService
    operator: OperatorQueue


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: PaymentGateway,
    settings: Settings,
) -> Services:
    directory = SqlOrganizationDirectory(session_factory)
    return Services(
        settings=settings,
        session_factory=session_factory,
        gateway=gateway,
        directory=directory,
        orchestrator=SettlementOrchestrator(session_factory, gateway, directory, settings),
        reconciler=WebhookReconciler(session_factory, directory, settings),
        executor=TransferExecutor(session_factory, gateway, directory, settings),
        commissions=CommissionAggregator(session_factory),
        subscriptions=SubscriptionService(session_factory, gateway, directory),
        operator=OperatorQueue(session_factory),
    )
