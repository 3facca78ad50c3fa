"""Settlement error taxonomy."""

from typing import Any


class SettlementError(Exception):
    """Base class for settlement errors."""


class InvalidFeeConfiguration(SettlementError):
    """Fee percentages or amount cannot produce a valid split.

    Raised before anything is written.
    """


class DuplicateRequest(SettlementError):
    """An idempotency key was already used; carries the existing record."""

    def __init__(self, existing: Any):
        super().__init__(f"Request already processed: {getattr(existing, 'id', existing)}")
        self.existing = existing


class PlanNotFound(SettlementError):
    """Billing plan does not exist or is inactive."""


class OrganizationNotFound(SettlementError):
    """Organization does not exist in the directory."""


class GatewayError(SettlementError):
    """Payment gateway call failed."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class GatewayTransientError(GatewayError):
    """Timeout, rate limit or 5xx. Safe to retry with the same idempotency key."""


class GatewayPermanentError(GatewayError):
    """Declined, invalid destination, compliance block. Needs manual action."""


class UnknownTransactionReference(SettlementError):
    """A webhook references a transaction with no local Payment."""

    def __init__(self, transaction_id: str, event_id: str):
        super().__init__(f"No payment for transaction {transaction_id} (event {event_id})")
        self.transaction_id = transaction_id
        self.event_id = event_id


class InvalidEventPayload(SettlementError):
    """A verified gateway event carries a field that cannot be applied."""

    def __init__(self, event_id: str, detail: str):
        super().__init__(f"Event {event_id} has an invalid payload: {detail}")
        self.event_id = event_id
        self.detail = detail


class InvalidWebhookSignature(SettlementError):
    """Webhook signature header is missing or does not match the body."""


class MixedCurrencyTotal(SettlementError):
    """A single total was asked for over amounts in several currencies."""

    def __init__(self, agency_id: str, currencies: list[str]):
        super().__init__(
            f"Commissions for {agency_id} span currencies {', '.join(currencies)}; "
            "pass a currency or use the per-currency summary"
        )
        self.currencies = currencies


class NotAnAgency(SettlementError):
    """Operation only applies to agency organizations."""
