"""Platform / agency revenue split calculation."""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from settlement.errors import InvalidFeeConfiguration
from settlement.money import HUNDRED, is_representable, round_money

ZERO = Decimal("0")


@dataclass(frozen=True)
class SplitAmounts:
    """Beneficiary amounts for one gross amount. Always sums to the gross."""

    gross_amount: Decimal
    platform_amount: Decimal
    agency_amount: Decimal
    platform_percentage: Decimal
    agency_percentage: Decimal

    @property
    def has_agency_share(self) -> bool:
        return self.agency_amount > ZERO or self.agency_percentage > ZERO


def _as_decimal(value, field: str) -> Decimal:
    if isinstance(value, float):
        # Floats carry binary noise; go through str so 0.1 stays 0.1
        value = str(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise InvalidFeeConfiguration(f"{field} is not a number: {value!r}") from e
    if not result.is_finite():
        raise InvalidFeeConfiguration(f"{field} must be finite")
    return result


def _check_percentage(value: Decimal, field: str) -> None:
    if value < ZERO or value > HUNDRED:
        raise InvalidFeeConfiguration(f"{field} must be between 0 and 100, got {value}")


def compute_split(
    gross_amount,
    platform_fee_pct,
    agency_margin_pct=ZERO,
    *,
    has_agency: bool = True,
    currency: str = "usd",
) -> SplitAmounts:
    """
    Divide a gross amount between the platform and the payer's agency.

    The platform share is rounded half-up to the currency's minor unit and
    the agency receives the remainder, so the two always add up to the gross
    amount exactly. Without an agency parent the platform keeps everything.

    Args:
        gross_amount: Amount the customer pays
        platform_fee_pct: Platform fee, 0-100
        agency_margin_pct: Agency surcharge on the plan, 0-100. Already priced
            into the gross amount, so it is validated but not re-applied.
        has_agency: Whether the payer has an agency parent
        currency: ISO currency code, selects the minor unit

    Returns:
        SplitAmounts

    Raises:
        InvalidFeeConfiguration: A percentage is outside [0, 100], or the gross
            amount is negative or finer than the currency's minor unit.
    """
    gross = _as_decimal(gross_amount, "gross_amount")
    platform_pct = _as_decimal(platform_fee_pct, "platform_fee_percentage")
    margin_pct = _as_decimal(agency_margin_pct, "agency_margin_percentage")

    _check_percentage(platform_pct, "platform_fee_percentage")
    _check_percentage(margin_pct, "agency_margin_percentage")

    if gross < ZERO:
        raise InvalidFeeConfiguration(f"gross_amount must not be negative, got {gross}")
    if not is_representable(gross, currency):
        raise InvalidFeeConfiguration(
            f"gross_amount {gross} has more precision than {currency} allows"
        )
    gross = round_money(gross, currency)

    if not has_agency:
        return SplitAmounts(
            gross_amount=gross,
            platform_amount=gross,
            agency_amount=round_money(ZERO, currency),
            platform_percentage=HUNDRED,
            agency_percentage=ZERO,
        )

    platform_amount = round_money(gross * platform_pct / HUNDRED, currency)
    agency_amount = gross - platform_amount

    if agency_amount < ZERO:
        raise InvalidFeeConfiguration(
            f"platform fee {platform_amount} exceeds gross amount {gross}"
        )

    return SplitAmounts(
        gross_amount=gross,
        platform_amount=platform_amount,
        agency_amount=agency_amount,
        platform_percentage=platform_pct,
        agency_percentage=HUNDRED - platform_pct,
    )
