"""Amount-based deposit correlation.

All deals for one asset share the custodial deposit address, so an inbound
deposit is tied to its deal by amount. Each buyer-side quote is salted with
a random micro-fraction (1-99 base units at 8 decimals) so two deals quoted
at the same moment for the same USD amount still expect different crypto
amounts. Matching then tolerates a small relative drift around the expected
amount. That band is wider than the salt, so each deposit is claimed by
exactly one deal: the open deal whose expected amount is closest to it.

This is fragile by nature: a per-deal sub-address or a payment memo, where
the rail supports one, correlates deposits without relying on amounts.
"""

from __future__ import annotations

import secrets
from collections.abc import Collection, Iterable
from datetime import datetime
from decimal import ROUND_DOWN, Decimal

from channel_escrow.domain.enums import DepositStatus
from channel_escrow.domain.protocols import DepositRecord

CRYPTO_QUANTUM = Decimal("0.00000001")
SALT_MIN_UNITS = 1
SALT_MAX_UNITS = 99


def to_crypto_units(value: Decimal) -> Decimal:
    return value.quantize(CRYPTO_QUANTUM, rounding=ROUND_DOWN)


def salt_amount(amount: Decimal) -> Decimal:
    """Add a random 1-99 base-unit suffix to a quoted crypto amount."""
    units = SALT_MIN_UNITS + secrets.randbelow(SALT_MAX_UNITS - SALT_MIN_UNITS + 1)
    return to_crypto_units(amount) + CRYPTO_QUANTUM * units


def within_tolerance(actual: Decimal, expected: Decimal, tolerance: Decimal) -> bool:
    low = expected * (1 - tolerance)
    high = expected * (1 + tolerance)
    return low <= actual <= high


def match_deposit(
    deposits: Iterable[DepositRecord],
    expected_amount: Decimal,
    since: datetime,
    tolerance: Decimal,
    *,
    exclude: Collection[str] = (),
) -> DepositRecord | None:
    """Return the deposit that most plausibly belongs to a deal.

    A deposit matches when it arrived at or after ``since``, its amount is
    within ``tolerance`` of ``expected_amount``, it has not failed and its
    ``tx_ref`` is not in ``exclude`` (deposits other deals already claimed).
    Settled deposits are preferred over pending ones, then the amount
    closest to ``expected_amount``.
    """
    candidates = [
        d
        for d in deposits
        if d.status is not DepositStatus.FAILED
        and d.tx_ref not in exclude
        and d.inserted_at >= since
        and within_tolerance(d.amount, expected_amount, tolerance)
    ]
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda d: (d.status is not DepositStatus.SUCCESS, abs(d.amount - expected_amount)),
    )


def is_settled(deposit: DepositRecord, required_confirmations: int) -> bool:
    """Whether the rail reports the deposit credited with enough confirmations."""
    return (
        deposit.status is DepositStatus.SUCCESS
        and deposit.confirmations >= required_confirmations
    )
