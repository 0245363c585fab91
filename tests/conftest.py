"""Shared test fixtures for the channel escrow test suite.

Provides:
    - Settings with timers shortened to milliseconds
    - A simulated payment rail and the in-process messaging surface
    - A ready-to-use orchestrator with in-memory audit and stats sinks
    - An in-memory SQLite session for repository tests
    - Helpers that drive a deal to a given stage
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from channel_escrow.config import Settings
from channel_escrow.domain.enums import DealAction, DealStatus
from channel_escrow.infrastructure.database.orm_models import Base
from channel_escrow.infrastructure.messaging import InMemoryMessagingSurface
from channel_escrow.infrastructure.rail import SimulatedRail
from channel_escrow.services.audit_log import AuditEntry, AuditLog
from channel_escrow.services.orchestrator import DealOrchestrator
from channel_escrow.services.stats_service import InMemoryStatsSink

BUYER = "111"
SELLER = "222"
LTC_ADDRESS = "MQMcJhpWHYVeQArcZR3sBgyPZxxRtnH441"
LTC_REFUND_ADDRESS = "LZ4hY1pK5cMZzP2mQnV7wUx9Rt3Bd8Ee6F"
BTC_ADDRESS = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"


# ---------------------------------------------------------------------------
# Collaborator Fixtures
# ---------------------------------------------------------------------------


class MemoryAuditSink:
    """Audit sink that keeps entries in a list."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def write(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def types(self, deal_id: str | None = None) -> list[str]:
        return [e.event_type for e in self.entries if deal_id is None or e.deal_id == deal_id]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        absolute_timeout_seconds=60,
        inactivity_timeout_seconds=60,
        payment_poll_interval_seconds=0.01,
        deposit_settle_delay_seconds=0,
        teardown_grace_seconds=0,
        collect_timeout_seconds=0.5,
        deposit_window_seconds=60,
        closed_deal_idle_seconds=60,
        redis_enabled=False,
        rail_simulate=True,
    )


@pytest.fixture
def rail() -> SimulatedRail:
    return SimulatedRail()


@pytest.fixture
def surface() -> InMemoryMessagingSurface:
    return InMemoryMessagingSurface()


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def stats_sink() -> InMemoryStatsSink:
    return InMemoryStatsSink()


@pytest.fixture
async def make_orchestrator(
    rail: SimulatedRail,
    surface: InMemoryMessagingSurface,
    settings: Settings,
    audit_sink: MemoryAuditSink,
    stats_sink: InMemoryStatsSink,
):
    """Build an orchestrator; keyword arguments override the defaults."""
    built: list[DealOrchestrator] = []

    def factory(*, rail_override=None, **overrides) -> DealOrchestrator:
        kwargs = {
            "settings": settings,
            "audit": AuditLog([audit_sink]),
            "stats": stats_sink,
            **overrides,
        }
        orchestrator = DealOrchestrator(rail_override or rail, surface, **kwargs)
        built.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in built:
        await orchestrator.shutdown()


@pytest.fixture
def orchestrator(make_orchestrator) -> DealOrchestrator:
    return make_orchestrator()


# ---------------------------------------------------------------------------
# Database Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Deal Drivers
# ---------------------------------------------------------------------------


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Wait until ``predicate()`` is true or fail the test."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


async def type_text(
    surface: InMemoryMessagingSurface, deal_id: str, actor_id: str, text: str
) -> None:
    """Post ``text`` once the deal is waiting for input from ``actor_id``."""
    await eventually(lambda: surface.is_collecting(deal_id, actor_id))
    assert await surface.post_message(deal_id, actor_id, text)


async def to_seller_approval(orchestrator, surface, asset: str, amount: str):
    deal = await orchestrator.open_deal(BUYER, SELLER, asset)
    await orchestrator.handle_action(deal.deal_id, BUYER, DealAction.CLAIM_BUYER)
    await orchestrator.handle_action(deal.deal_id, SELLER, DealAction.CLAIM_SELLER)
    await type_text(surface, deal.deal_id, BUYER, amount)
    await eventually(lambda: deal.status is DealStatus.AWAITING_SELLER_APPROVAL)
    return deal


async def to_deposit(orchestrator, surface, asset: str = "LTC", amount: str = "40",
                     fee_payer: str = "split"):
    deal = await to_seller_approval(orchestrator, surface, asset, amount)
    await orchestrator.handle_action(deal.deal_id, SELLER, DealAction.APPROVE_AMOUNT)
    if deal.status is DealStatus.AWAITING_FEE_AGREEMENT:
        await orchestrator.handle_action(deal.deal_id, BUYER, DealAction.VOTE_FEE_PAYER, fee_payer)
        await orchestrator.handle_action(
            deal.deal_id, SELLER, DealAction.VOTE_FEE_PAYER, fee_payer
        )
    assert deal.status is DealStatus.AWAITING_DEPOSIT
    return deal


async def to_delivery(orchestrator, surface, rail, **kwargs):
    deal = await to_deposit(orchestrator, surface, **kwargs)
    rail.simulate_deposit(deal.asset, deal.buyer_pays_crypto)
    await eventually(lambda: deal.status is DealStatus.AWAITING_DELIVERY)
    return deal


async def to_payout_confirmation(orchestrator, surface, rail, address: str = LTC_ADDRESS,
                                 **kwargs):
    deal = await to_delivery(orchestrator, surface, rail, **kwargs)
    await orchestrator.handle_action(deal.deal_id, SELLER, DealAction.CONFIRM_DELIVERY)
    await orchestrator.handle_action(deal.deal_id, BUYER, DealAction.CONFIRM_RECEIPT)
    await type_text(surface, deal.deal_id, SELLER, address)
    await eventually(lambda: deal.status is DealStatus.AWAITING_PAYOUT_CONFIRMATION)
    return deal
