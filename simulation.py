#!/usr/bin/env python3
"""Channel Escrow: End-to-End Simulation.

Drives whole deals through the orchestrator with a simulated payment rail
and the in-process messaging surface. BuyerBot and SellerBot press buttons
and type into the channel the way two chat users would.

    Scenario 1: Split fee (LTC, $40)
        - Fee is $1.00, both vote "split" -> buyer pays $40.50, seller gets $39.50
        - Deposit lands, seller delivers, buyer confirms, seller is paid once
        - Both vote on privacy and close the channel

    Scenario 2: Fee waived (BTC, $25)
        - Amount is under the fee threshold, no fee ballot
        - Deposit address is issued as soon as the seller approves

    Scenario 3: Dispute and refund (LTC, $40, seller pays the fee)
        - Buyer reports the goods were not received
        - Seller approves a refund, buyer receives the deposit minus the fee

    Scenario 4: Payout failure
        - The rail rejects the withdrawal -> the deal is escalated
        - An operator resolves it as completed by hand

Usage:
    # Stats kept in memory:
    uv run python simulation.py

    # Stats written to SQLite in-memory and read back through StatsService:
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --scenario 3
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from channel_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from channel_escrow.config import Settings  # noqa: E402
from channel_escrow.domain.enums import DealAction, DealStatus  # noqa: E402
from channel_escrow.domain.exceptions import RailError  # noqa: E402
from channel_escrow.infrastructure.messaging import InMemoryMessagingSurface  # noqa: E402
from channel_escrow.infrastructure.rail import SimulatedRail  # noqa: E402
from channel_escrow.services.audit_log import AuditLog  # noqa: E402
from channel_escrow.services.orchestrator import DealOrchestrator  # noqa: E402
from channel_escrow.services.stats_service import (  # noqa: E402
    InMemoryStatsSink,
    SqlStatsSink,
    StatsService,
)

if TYPE_CHECKING:
    from channel_escrow.domain.deal import DealRecord
    from channel_escrow.domain.protocols import WithdrawalReceipt

# Module-level state
_sqlite_engine = None
_sqlite_session_factory = None

LTC_SELLER_ADDRESS = "MQMcJhpWHYVeQArcZR3sBgyPZxxRtnH441"
LTC_BUYER_ADDRESS = "LZ4hY1pK5cMZzP2mQnV7wUx9Rt3Bd8Ee6F"
BTC_SELLER_ADDRESS = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"

SIM_SETTINGS = Settings(
    absolute_timeout_seconds=120,
    inactivity_timeout_seconds=60,
    payment_poll_interval_seconds=0.05,
    deposit_settle_delay_seconds=0.1,
    teardown_grace_seconds=0.2,
    collect_timeout_seconds=5,
    audit_log_path="simulation_transactions.log",
)


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False) -> None:
    """Create an in-memory SQLite database for the stats tables."""
    global _sqlite_engine, _sqlite_session_factory

    if not use_sqlite:
        return

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    from channel_escrow.infrastructure.database.orm_models import Base

    _sqlite_engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    _sqlite_session_factory = async_sessionmaker(
        bind=_sqlite_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with _sqlite_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database.sqlite_initialized")


async def shutdown_database() -> None:
    """Close database connections."""
    global _sqlite_engine, _sqlite_session_factory

    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
        _sqlite_session_factory = None


def build_stats_sink() -> SqlStatsSink | InMemoryStatsSink:
    if _sqlite_session_factory is not None:
        return SqlStatsSink(_sqlite_session_factory)
    return InMemoryStatsSink()


# ---------------------------------------------------------------------------
# Rails
# ---------------------------------------------------------------------------
class BrokenWithdrawalRail(SimulatedRail):
    """Simulated rail whose withdrawals are always rejected."""

    async def withdraw(
        self,
        asset: str,
        amount: Decimal,
        destination: str,
        network: str,
    ) -> WithdrawalReceipt:
        self.calls.append(("withdraw", (asset, amount, destination, network)))
        raise RailError("Withdrawal suspended for this asset", operation="withdraw")


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------
@dataclass
class Harness:
    """One orchestrator with its rail, channel surface and stats sink."""

    rail: SimulatedRail
    surface: InMemoryMessagingSurface
    stats: SqlStatsSink | InMemoryStatsSink
    orchestrator: DealOrchestrator

    @classmethod
    def build(cls, rail: SimulatedRail | None = None) -> Harness:
        rail = rail or SimulatedRail()
        surface = InMemoryMessagingSurface()
        stats = build_stats_sink()
        orchestrator = DealOrchestrator(
            rail,
            surface,
            settings=SIM_SETTINGS,
            audit=AuditLog(),
            stats=stats,
        )
        return cls(rail, surface, stats, orchestrator)

    async def wait_for_status(
        self, deal_id: str, status: DealStatus, timeout: float = 5.0
    ) -> DealRecord:
        deal = self.orchestrator.deals.get(deal_id)
        async with asyncio.timeout(timeout):
            while deal.status is not status:
                await asyncio.sleep(0.01)
        return deal

    async def wait_for_collector(self, deal_id: str, actor_id: str, timeout: float = 5.0) -> None:
        async with asyncio.timeout(timeout):
            while not self.surface.is_collecting(deal_id, actor_id):
                await asyncio.sleep(0.01)

    async def wait_for_close(self, deal_id: str, timeout: float = 5.0) -> None:
        async with asyncio.timeout(timeout):
            while deal_id in self.orchestrator.deals:
                await asyncio.sleep(0.01)

    def fund(self, deal: DealRecord) -> None:
        """Buyer sends exactly the quoted amount to the deposit address."""
        self.rail.simulate_deposit(deal.asset, deal.buyer_pays_crypto)

    def print_transcript(self, deal_id: str) -> None:
        for message in self.surface.transcript(deal_id):
            first_line = message.text.splitlines()[0] if message.text else ""
            print(f"    [{message.author}] {first_line}")


# ---------------------------------------------------------------------------
# Bot Participants
# ---------------------------------------------------------------------------
@dataclass
class Participant:
    """A chat user taking part in a deal channel."""

    user_id: str
    harness: Harness

    async def press(self, deal_id: str, action: DealAction, value: str | None = None) -> Any:
        result = await self.harness.orchestrator.handle_action(
            deal_id, self.user_id, action, value
        )
        logger.info(
            "simulation.pressed",
            actor=self.user_id,
            action=action.value,
            ok=result.ok,
            status=result.status.value,
        )
        return result

    async def type(self, deal_id: str, text: str) -> None:
        await self.harness.wait_for_collector(deal_id, self.user_id)
        delivered = await self.harness.surface.post_message(deal_id, self.user_id, text)
        logger.info("simulation.typed", actor=self.user_id, text=text, delivered=delivered)


class BuyerBot(Participant):
    async def take_role(self, deal_id: str) -> None:
        await self.press(deal_id, DealAction.CLAIM_BUYER)

    async def enter_amount(self, deal_id: str, amount: str) -> None:
        await self.type(deal_id, amount)


class SellerBot(Participant):
    async def take_role(self, deal_id: str) -> None:
        await self.press(deal_id, DealAction.CLAIM_SELLER)

    async def approve(self, deal_id: str) -> None:
        await self.press(deal_id, DealAction.APPROVE_AMOUNT)


def section(title: str) -> None:
    print("\n" + "=" * 70)
    print(f"  {title}")
    print("=" * 70)


async def negotiate(
    h: Harness,
    buyer: BuyerBot,
    seller: SellerBot,
    asset: str,
    amount: str,
    fee_vote: str | None,
) -> DealRecord:
    """Open a deal and walk it to awaiting_deposit."""
    deal = await h.orchestrator.open_deal(buyer.user_id, seller.user_id, asset)
    deal_id = deal.deal_id
    await buyer.take_role(deal_id)
    await seller.take_role(deal_id)
    await buyer.enter_amount(deal_id, amount)
    await h.wait_for_status(deal_id, DealStatus.AWAITING_SELLER_APPROVAL)
    await seller.approve(deal_id)
    if fee_vote is not None:
        await buyer.press(deal_id, DealAction.VOTE_FEE_PAYER, fee_vote)
        await seller.press(deal_id, DealAction.VOTE_FEE_PAYER, fee_vote)
    deal = await h.wait_for_status(deal_id, DealStatus.AWAITING_DEPOSIT)
    print(f"  Fee:             ${deal.fee_usd}")
    print(f"  Buyer pays:      ${deal.buyer_pays_usd} = {deal.buyer_pays_crypto} {asset}")
    print(f"  Seller receives: ${deal.seller_receives_usd} = {deal.seller_receives_crypto} {asset}")
    print(f"  Deposit address: {deal.deposit_address} ({deal.deposit_network})")
    return deal


async def deliver(h: Harness, deal: DealRecord, seller: SellerBot) -> None:
    h.fund(deal)
    await h.wait_for_status(deal.deal_id, DealStatus.AWAITING_DELIVERY)
    print(f"  Deposit confirmed: {deal.deposit_tx_ref[:18]}...")
    await seller.press(deal.deal_id, DealAction.CONFIRM_DELIVERY)


async def close_channel(h: Harness, deal_id: str, *actors: Participant) -> None:
    for actor in actors:
        await actor.press(deal_id, DealAction.VOTE_CLOSE, "close")
    await h.wait_for_close(deal_id)
    print("  Channel closed and deal removed.")


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------
async def scenario_1_split_fee() -> None:
    """Scenario 1: LTC $40, fee split between the parties."""
    section("SCENARIO 1: Split Fee (LTC, $40)")
    h = Harness.build()
    buyer, seller = BuyerBot("111", h), SellerBot("222", h)

    deal = await negotiate(h, buyer, seller, "LTC", "40", "split")
    await deliver(h, deal, seller)
    await buyer.press(deal.deal_id, DealAction.CONFIRM_RECEIPT)
    await seller.type(deal.deal_id, LTC_SELLER_ADDRESS)
    await h.wait_for_status(deal.deal_id, DealStatus.AWAITING_PAYOUT_CONFIRMATION)
    await seller.press(deal.deal_id, DealAction.CONFIRM_PAYOUT)

    result = await seller.press(deal.deal_id, DealAction.CONFIRM_PAYOUT)
    print(f"  Second payout press rejected: {result.code}")
    print(f"  Withdrawals sent: {len(h.rail.withdrawals)}")
    print(f"  Payout tx: {deal.payout_tx_ref[:18]}...")

    await buyer.press(deal.deal_id, DealAction.VOTE_PRIVACY, "public")
    await seller.press(deal.deal_id, DealAction.VOTE_PRIVACY, "anonymous")
    h.print_transcript(deal.deal_id)
    await close_channel(h, deal.deal_id, buyer, seller)
    await report_stats(h, buyer.user_id)


async def scenario_2_fee_waived() -> None:
    """Scenario 2: BTC $25, below the fee threshold."""
    section("SCENARIO 2: Fee Waived (BTC, $25)")
    h = Harness.build()
    buyer, seller = BuyerBot("333", h), SellerBot("444", h)

    deal = await negotiate(h, buyer, seller, "BTC", "$25", None)
    print(f"  Quotes requested: {len(h.rail.calls_of('quote'))}")
    await deliver(h, deal, seller)
    await buyer.press(deal.deal_id, DealAction.CONFIRM_RECEIPT)
    await seller.type(deal.deal_id, "not-a-bitcoin-address")
    await seller.type(deal.deal_id, BTC_SELLER_ADDRESS)
    await h.wait_for_status(deal.deal_id, DealStatus.AWAITING_PAYOUT_CONFIRMATION)
    await seller.press(deal.deal_id, DealAction.CONFIRM_PAYOUT)
    print(f"  Status: {deal.status.value}")

    await buyer.press(deal.deal_id, DealAction.VOTE_PRIVACY, "anonymous")
    await seller.press(deal.deal_id, DealAction.VOTE_PRIVACY, "anonymous")
    await close_channel(h, deal.deal_id, buyer, seller)
    await report_stats(h, seller.user_id)


async def scenario_3_dispute_refund() -> None:
    """Scenario 3: buyer disputes, seller approves a refund."""
    section("SCENARIO 3: Dispute and Refund (LTC, $40)")
    h = Harness.build()
    buyer, seller = BuyerBot("555", h), SellerBot("666", h)

    deal = await negotiate(h, buyer, seller, "LTC", "40", "seller_pays")
    await deliver(h, deal, seller)
    await buyer.press(deal.deal_id, DealAction.REPORT_NOT_RECEIVED)
    print(f"  Status: {deal.status.value}")
    await seller.press(deal.deal_id, DealAction.APPROVE_REFUND)
    await buyer.type(deal.deal_id, LTC_BUYER_ADDRESS)
    await h.wait_for_status(deal.deal_id, DealStatus.REFUNDED)

    refund = h.rail.withdrawals[-1]
    print(f"  Refunded {refund['amount']} LTC to {refund['destination']}")
    print(f"  (deposit was {deal.buyer_pays_crypto} LTC, fee ${deal.fee_usd} retained)")
    await close_channel(h, deal.deal_id, buyer, seller)


async def scenario_4_payout_failure() -> None:
    """Scenario 4: withdrawal rejected, operator completes by hand."""
    section("SCENARIO 4: Payout Failure and Operator Resolution")
    h = Harness.build(BrokenWithdrawalRail())
    buyer, seller = BuyerBot("777", h), SellerBot("888", h)

    deal = await negotiate(h, buyer, seller, "LTC", "100", "buyer_pays")
    await deliver(h, deal, seller)
    await buyer.press(deal.deal_id, DealAction.CONFIRM_RECEIPT)
    await seller.type(deal.deal_id, LTC_SELLER_ADDRESS)
    await h.wait_for_status(deal.deal_id, DealStatus.AWAITING_PAYOUT_CONFIRMATION)
    result = await seller.press(deal.deal_id, DealAction.CONFIRM_PAYOUT)
    print(f"  Payout result: ok={result.ok} code={result.code}")
    print(f"  Status: {deal.status.value} ({deal.escalation_reason})")

    await h.orchestrator.resolve_escalation(
        deal.deal_id,
        DealStatus.COMPLETED,
        tx_ref="manual-" + "f" * 16,
        note="paid from the hot wallet",
    )
    print(f"  Status after operator: {deal.status.value}")
    await buyer.press(deal.deal_id, DealAction.VOTE_PRIVACY, "public")
    await seller.press(deal.deal_id, DealAction.VOTE_PRIVACY, "public")
    await close_channel(h, deal.deal_id, buyer, seller)


async def report_stats(h: Harness, user_id: str) -> None:
    if isinstance(h.stats, InMemoryStatsSink):
        for summary in h.stats.summaries:
            print(
                f"  Recorded: {summary.asset} ${summary.deal_amount_usd} "
                f"fee=${summary.fee_usd} buyer={summary.buyer_privacy} "
                f"seller={summary.seller_privacy}"
            )
        return
    async with _sqlite_session_factory() as session:
        profile = await StatsService(session).user_profile(user_id)
    print(
        f"  Profile {user_id}: {profile['total_deals']} deal(s), "
        f"spent ${profile['total_spent']}, earned ${profile['total_earned']}"
    )


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------
SCENARIOS = {
    1: scenario_1_split_fee,
    2: scenario_2_fee_waived,
    3: scenario_3_dispute_refund,
    4: scenario_4_payout_failure,
}


async def run_all(use_sqlite: bool = False) -> None:
    """Run all scenarios sequentially."""
    await init_database(use_sqlite=use_sqlite)

    try:
        print("\n" + "=" * 70)
        print("  CHANNEL ESCROW SIMULATION")
        print(f"  Stats: {'SQLite (in-memory)' if use_sqlite else 'in memory'}")
        print("=" * 70)

        for scenario in SCENARIOS.values():
            await scenario()

        print("\n" + "=" * 70)
        print("  ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")
    finally:
        await shutdown_database()


async def run_scenario(num: int, use_sqlite: bool = False) -> None:
    """Run a specific scenario."""
    await init_database(use_sqlite=use_sqlite)
    try:
        if num not in SCENARIOS:
            print(f"Unknown scenario {num}. Available: {', '.join(map(str, SCENARIOS))}")
            return
        await SCENARIOS[num]()
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Channel Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Record completed deals in SQLite in-memory and read them back.",
    )
    args = parser.parse_args()

    if args.scenario == 0:
        asyncio.run(run_all(use_sqlite=args.sqlite))
    else:
        asyncio.run(run_scenario(args.scenario, use_sqlite=args.sqlite))
