"""Repository tests against an in-memory SQLite database."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from channel_escrow.domain.protocols import CompletedDealSummary
from channel_escrow.infrastructure.database.repositories import (
    AuditRepository,
    DealStatsRepository,
)


def _summary(deal_id: str, day: int, asset: str = "LTC") -> CompletedDealSummary:
    return CompletedDealSummary(
        deal_id=deal_id,
        buyer_id="111",
        seller_id="222",
        asset=asset,
        deal_amount_usd=Decimal("100.00"),
        fee_usd=Decimal("2.00"),
        buyer_paid_usd=Decimal("101.00"),
        seller_received_usd=Decimal("99.00"),
        buyer_paid_crypto=Decimal("1.26250050"),
        seller_received_crypto=Decimal("1.23750000"),
        payout_tx_ref=f"0x{deal_id}",
        buyer_privacy="public",
        seller_privacy="public",
        completed_at=datetime(2026, 3, day, tzinfo=UTC),
    )


class TestDealStatsRepository:
    @pytest.mark.asyncio
    async def test_save_deal_updates_aggregates(self, db_session) -> None:
        repo = DealStatsRepository(db_session)
        await repo.save_deal(_summary("d1", 1))
        await repo.save_deal(_summary("d2", 2))

        buyer = await repo.get_user_stats("111")
        seller = await repo.get_user_stats("222")
        assert buyer.total_deals == 2
        assert Decimal(buyer.total_spent) == Decimal("202.00")
        assert Decimal(seller.total_earned) == Decimal("198.00")
        assert seller.net_position == Decimal("198.00")

    @pytest.mark.asyncio
    async def test_lookup_and_filters(self, db_session) -> None:
        repo = DealStatsRepository(db_session)
        await repo.save_deal(_summary("d1", 1))
        await repo.save_deal(_summary("d2", 5, asset="BTC"))
        await repo.save_deal(_summary("d3", 9))

        found = await repo.get_by_deal_id("d2")
        assert found.coin == "BTC"
        assert await repo.get_by_deal_id("missing") is None

        ltc = await repo.deals_by_coin("LTC")
        assert [d.deal_id for d in ltc] == ["d3", "d1"]

        ranged = await repo.deals_by_date_range(
            datetime(2026, 3, 2, tzinfo=UTC), datetime(2026, 3, 8, tzinfo=UTC)
        )
        assert [d.deal_id for d in ranged] == ["d2"]

        recent = await repo.get_user_deals("222", limit=2)
        assert [d.deal_id for d in recent] == ["d3", "d2"]

    @pytest.mark.asyncio
    async def test_commission_totals(self, db_session) -> None:
        repo = DealStatsRepository(db_session)
        await repo.save_deal(_summary("d1", 1))
        await repo.save_deal(_summary("d2", 2))

        totals = await repo.commission_totals()

        assert len(totals) == 1
        assert totals[0]["coin"] == "LTC"
        assert Decimal(str(totals[0]["total_usd"])) == Decimal("4.00")


class TestAuditRepository:
    @pytest.mark.asyncio
    async def test_events_in_order(self, db_session) -> None:
        repo = AuditRepository(db_session)
        await repo.record(
            "DEPOSIT_DETECTED", "d1", created_at=datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        )
        await repo.record(
            "DEAL_OPENED", "d1", created_at=datetime(2026, 3, 1, 11, 0, tzinfo=UTC)
        )
        await repo.record("DEAL_OPENED", "d2")

        events = await repo.get_by_deal("d1")

        assert [e.event_type for e in events] == ["DEAL_OPENED", "DEPOSIT_DETECTED"]
