"""Platform fee split.

compute_split() turns a gross amount into (platform fee, net payee amount).
The fee is rounded half-up to the minor currency unit and the net amount
is derived by subtraction, so fee + net == gross always holds exactly.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from talent_escrow.domain.exceptions import ValidationError

MINOR_UNIT = Decimal("0.01")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FeeSplit:
    """Result of a fee computation.

    Attributes:
        gross: The amount the payer is charged.
        fee: Platform fee retained by the marketplace.
        net: Amount owed to the payee.
        fee_rate_percent: The rate the split was computed with.
    """

    gross: Decimal
    fee: Decimal
    net: Decimal
    fee_rate_percent: Decimal

    def to_dict(self) -> dict:
        return {
            "gross": str(self.gross),
            "fee": str(self.fee),
            "net": str(self.net),
            "fee_rate_percent": str(self.fee_rate_percent),
        }


def to_money(value: Decimal | int | float | str, field: str = "amount") -> Decimal:
    """Coerce a value into a two-decimal Decimal, rejecting junk.

    Floats go through str() so 33.33 stays 33.33 instead of its binary
    approximation.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as err:
        raise ValidationError(f"{field} is not a number: {value!r}", field=field) from err

    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite", field=field)
    if amount < 0:
        raise ValidationError(f"{field} must not be negative", field=field)
    if amount != amount.quantize(MINOR_UNIT):
        raise ValidationError(f"{field} has more precision than the minor unit", field=field)
    return amount.quantize(MINOR_UNIT)


def compute_split(
    gross_amount: Decimal | int | float | str,
    fee_rate_percent: Decimal | int | float | str,
) -> FeeSplit:
    """Split a gross amount into platform fee and net payee amount.

    Args:
        gross_amount: Non-negative, finite amount in major units (e.g. 10000.00).
        fee_rate_percent: Platform fee rate in percent, 0-100 (e.g. 15).

    Returns:
        FeeSplit with fee + net == gross.

    Raises:
        ValidationError: If the amount or rate is out of range.
    """
    gross = to_money(gross_amount, field="gross_amount")

    try:
        rate = Decimal(str(fee_rate_percent))
    except (InvalidOperation, ValueError) as err:
        raise ValidationError(
            f"fee_rate_percent is not a number: {fee_rate_percent!r}",
            field="fee_rate_percent",
        ) from err
    if not rate.is_finite() or rate < 0 or rate > _HUNDRED:
        raise ValidationError("fee_rate_percent must be between 0 and 100", field="fee_rate_percent")

    fee = (gross * rate / _HUNDRED).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)
    net = gross - fee
    return FeeSplit(gross=gross, fee=fee, net=net, fee_rate_percent=rate)
