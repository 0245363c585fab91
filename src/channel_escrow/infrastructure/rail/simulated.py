"""Simulated Payment Rail.

Used in development, in the end-to-end simulation script and in tests. Prices
are fixed, deposit addresses are deterministic per asset, deposits are
injected with ``simulate_deposit`` and withdrawals return fake transaction
references. Every call is recorded in ``calls`` so tests can assert on the
exact sequence the orchestrator issued.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import UTC, datetime
from decimal import ROUND_DOWN, Decimal

from channel_escrow.domain.coins import get_coin
from channel_escrow.domain.enums import DepositStatus
from channel_escrow.domain.exceptions import RailError
from channel_escrow.domain.protocols import (
    DepositAddress,
    DepositRecord,
    Quote,
    WithdrawalReceipt,
)
from channel_escrow.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_PRICES: dict[str, Decimal] = {
    "BTC": Decimal("65000"),
    "ETH": Decimal("3000"),
    "LTC": Decimal("80"),
    "SOL": Decimal("150"),
    "USDT": Decimal("1"),
    "USDC": Decimal("1"),
}

_DEPOSIT_ADDRESSES: dict[str, str] = {
    "BTC": "15NQQioz7K9qXkFviMCEkAnucPHvfp87XD",
    "ETH": "0xc72b9146b15b2b56e28042dd42707ecdbb317550",
    "LTC": "LhuT4yi9LnRfdQS4Lj6gRK4xLLaYQDwE11",
    "SOL": "BzwshJH9iwV9K2Zsq9RiiLvdK9E6kyznLbF9KfWHM3kF",
    "USDT": "0xc72b9146b15b2b56e28042dd42707ecdbb317550",
    "USDC": "0xc72b9146b15b2b56e28042dd42707ecdbb317550",
}


def _fake_tx_ref() -> str:
    return "0x" + uuid.uuid4().hex + uuid.uuid4().hex


class SimulatedRail:
    """In-memory PaymentRail."""

    def __init__(self, prices: dict[str, Decimal] | None = None) -> None:
        self.prices = dict(prices or DEFAULT_PRICES)
        self.calls: list[tuple[str, tuple]] = []
        self.deposits: list[DepositRecord] = []
        self.withdrawals: list[dict] = []

    def calls_of(self, operation: str) -> list[tuple]:
        return [args for op, args in self.calls if op == operation]

    async def quote(self, asset: str, usd_amount: Decimal) -> Quote:
        self.calls.append(("quote", (asset, usd_amount)))
        price = self.prices.get(asset)
        if price is None:
            raise RailError(f"No price for {asset}", operation="quote")
        crypto = (usd_amount / price).quantize(Decimal("0.00000001"), rounding=ROUND_DOWN)
        return Quote(
            asset=asset,
            usd_amount=usd_amount,
            crypto_amount=crypto,
            rate=price,
            quoted_at=datetime.now(UTC),
        )

    async def issue_deposit_address(self, asset: str) -> DepositAddress:
        self.calls.append(("issue_deposit_address", (asset,)))
        address = _DEPOSIT_ADDRESSES.get(asset)
        if address is None:
            raise RailError(f"No deposit address for {asset}", operation="deposit_address")
        return DepositAddress(
            asset=asset,
            address=address,
            network=get_coin(asset).settlement_network,
        )

    async def poll_deposits(self, asset: str, since: datetime) -> list[DepositRecord]:
        self.calls.append(("poll_deposits", (asset, since)))
        return [d for d in self.deposits if d.asset == asset and d.inserted_at >= since]

    async def withdraw(
        self,
        asset: str,
        amount: Decimal,
        destination: str,
        network: str,
    ) -> WithdrawalReceipt:
        self.calls.append(("withdraw", (asset, amount, destination, network)))
        tx_ref = _fake_tx_ref()
        self.withdrawals.append(
            {
                "asset": asset,
                "amount": amount,
                "destination": destination,
                "network": network,
                "tx_ref": tx_ref,
            }
        )
        logger.info(
            "rail.withdrawal_simulated",
            asset=asset,
            amount=str(amount),
            destination=destination,
            tx_ref=tx_ref,
        )
        return WithdrawalReceipt(tx_ref=tx_ref, withdraw_id=uuid.uuid4().hex)

    # ------------------------------------------------------------------
    # Simulation controls
    # ------------------------------------------------------------------

    def simulate_deposit(
        self,
        asset: str,
        amount: Decimal,
        *,
        tx_ref: str | None = None,
        confirmations: int | None = None,
        status: DepositStatus = DepositStatus.SUCCESS,
        inserted_at: datetime | None = None,
    ) -> DepositRecord:
        """Make a deposit visible to the next ``poll_deposits`` call."""
        record = DepositRecord(
            asset=asset,
            amount=amount,
            tx_ref=tx_ref or _fake_tx_ref(),
            confirmations=(
                get_coin(asset).required_confirmations
                if confirmations is None
                else confirmations
            ),
            status=status,
            inserted_at=inserted_at or datetime.now(UTC),
            address=_DEPOSIT_ADDRESSES.get(asset),
        )
        self.deposits.append(record)
        logger.info("rail.deposit_simulated", asset=asset, amount=str(amount))
        return record

    def confirm_deposit(self, tx_ref: str, confirmations: int | None = None) -> DepositRecord:
        """Mark an injected deposit as credited with enough confirmations."""
        for index, record in enumerate(self.deposits):
            if record.tx_ref == tx_ref:
                updated = replace(
                    record,
                    status=DepositStatus.SUCCESS,
                    confirmations=(
                        get_coin(record.asset).required_confirmations
                        if confirmations is None
                        else confirmations
                    ),
                )
                self.deposits[index] = updated
                logger.info("rail.deposit_confirmed", tx_ref=tx_ref)
                return updated
        raise KeyError(tx_ref)
