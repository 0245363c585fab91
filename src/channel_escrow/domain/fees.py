"""Service fee schedule and settlement split.

Fee tiers (USD, by deal amount):
    amount <  30   -> 0.00
    amount <  50   -> 1.00
    amount < 300   -> 2.00
    otherwise      -> 1% of amount
plus a flat 1.00 surcharge for stablecoin deals.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from channel_escrow.domain.enums import FeePayer
from channel_escrow.domain.exceptions import ValidationError

CENT = Decimal("0.01")
STABLECOIN_SURCHARGE = Decimal("1.00")
# Largest amount accepted from free text.
MAX_AMOUNT_USD = Decimal("1000000000")

_TIERS: tuple[tuple[Decimal, Decimal], ...] = (
    (Decimal("30"), Decimal("0.00")),
    (Decimal("50"), Decimal("1.00")),
    (Decimal("300"), Decimal("2.00")),
)
_PERCENT_RATE = Decimal("0.01")


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_fee(amount_usd: Decimal, is_stablecoin: bool = False) -> Decimal:
    """Return the service fee for a deal amount."""
    for upper_bound, flat_fee in _TIERS:
        if amount_usd < upper_bound:
            fee = flat_fee
            break
    else:
        fee = amount_usd * _PERCENT_RATE
    if is_stablecoin:
        fee += STABLECOIN_SURCHARGE
    return to_cents(fee)


@dataclass(frozen=True)
class SettlementSplit:
    """USD amounts each side settles once the fee payer is agreed."""

    buyer_pays_usd: Decimal
    seller_receives_usd: Decimal


def split_settlement(
    amount_usd: Decimal, fee_usd: Decimal, fee_payer: FeePayer
) -> SettlementSplit:
    """Apply the agreed fee payer to a deal amount.

    The difference between what the buyer pays and what the seller receives
    always equals the fee.
    """
    if fee_payer is FeePayer.BUYER:
        return SettlementSplit(to_cents(amount_usd + fee_usd), to_cents(amount_usd))
    if fee_payer is FeePayer.SELLER:
        return SettlementSplit(to_cents(amount_usd), to_cents(amount_usd - fee_usd))
    half = fee_usd / 2
    return SettlementSplit(to_cents(amount_usd + half), to_cents(amount_usd - half))


def parse_amount(raw: str) -> Decimal:
    """Parse a free-text USD amount such as ``"40"``, ``"$1,250.50"``.

    Raises:
        ValidationError: If the text is not a positive finite number.
    """
    cleaned = (raw or "").strip().replace(",", "").removeprefix("$").strip()
    try:
        value = Decimal(cleaned)
    except InvalidOperation as err:
        raise ValidationError(
            f"'{raw.strip()}' is not a valid amount. Enter a number like 40 or 40.50.",
            code="INVALID_AMOUNT",
        ) from err
    if not value.is_finite() or value <= 0:
        raise ValidationError(
            "The amount must be a positive number.",
            code="INVALID_AMOUNT",
        )
    if value > MAX_AMOUNT_USD:
        raise ValidationError(
            f"The amount must be at most {MAX_AMOUNT_USD:,}.",
            code="INVALID_AMOUNT",
        )
    try:
        value = to_cents(value)
    except InvalidOperation as err:
        raise ValidationError(
            f"'{raw.strip()}' is not a valid amount. Enter a number like 40 or 40.50.",
            code="INVALID_AMOUNT",
        ) from err
    if value <= 0:
        raise ValidationError(
            "The amount must be at least one cent.",
            code="INVALID_AMOUNT",
        )
    return value
