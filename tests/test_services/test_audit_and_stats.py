"""Tests for the audit fan-out and the completed-deal statistics."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from conftest import MemoryAuditSink

from channel_escrow.domain.deal import DealRecord
from channel_escrow.domain.enums import AuditEventType
from channel_escrow.domain.exceptions import ValidationError
from channel_escrow.domain.protocols import CompletedDealSummary
from channel_escrow.infrastructure.database.repositories import AuditRepository
from channel_escrow.services.audit_log import AuditLog, JsonlAuditSink, SqlAuditSink
from channel_escrow.services.stats_service import SqlStatsSink, StatsService


class BrokenSink:
    async def write(self, entry) -> None:
        raise OSError("disk full")


def _deal() -> DealRecord:
    deal = DealRecord("deal-audit", "111", "222", "LTC")
    deal.buyer = "111"
    deal.seller = "222"
    return deal


def _summary(deal_id: str = "deal-1", **overrides) -> CompletedDealSummary:
    fields = {
        "deal_id": deal_id,
        "buyer_id": "111",
        "seller_id": "222",
        "asset": "LTC",
        "deal_amount_usd": Decimal("40.00"),
        "fee_usd": Decimal("1.00"),
        "buyer_paid_usd": Decimal("40.50"),
        "seller_received_usd": Decimal("39.50"),
        "buyer_paid_crypto": Decimal("0.50625042"),
        "seller_received_crypto": Decimal("0.49375000"),
        "payout_tx_ref": "0xabc",
        "buyer_privacy": "public",
        "seller_privacy": "anonymous",
        "completed_at": datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
    }
    fields.update(overrides)
    return CompletedDealSummary(**fields)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class TestAuditLog:
    @pytest.mark.asyncio
    async def test_failing_sink_does_not_block_others(self) -> None:
        memory = MemoryAuditSink()
        audit = AuditLog([BrokenSink(), memory])

        entry = await audit.record(
            AuditEventType.WITHDRAWAL, _deal(), amount=Decimal("0.5"), tx_ref="0xabc"
        )

        assert memory.entries == [entry]
        assert entry.event_type == "WITHDRAWAL"
        assert entry.buyer == "111"

    @pytest.mark.asyncio
    async def test_none_metadata_is_dropped(self) -> None:
        memory = MemoryAuditSink()
        entry = await AuditLog([memory]).record(
            AuditEventType.ESCALATED, _deal(), error="rail down", note=None, stage="payout"
        )
        assert entry.metadata == {"stage": "payout"}

    @pytest.mark.asyncio
    async def test_jsonl_sink_appends_lines(self, tmp_path) -> None:
        path = tmp_path / "transactions.log"
        audit = AuditLog([JsonlAuditSink(path)])

        await audit.record(AuditEventType.DEPOSIT_DETECTED, _deal(), amount=Decimal("0.50625042"))
        await audit.record(AuditEventType.DEPOSIT_CONFIRMED, _deal(), tx_ref="0xin")

        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["event_type"] == "DEPOSIT_DETECTED"
        assert first["amount"] == "0.50625042"
        assert json.loads(lines[1])["tx_ref"] == "0xin"

    @pytest.mark.asyncio
    async def test_sql_sink_writes_rows(self, session_factory) -> None:
        audit = AuditLog([SqlAuditSink(session_factory)])
        await audit.record(AuditEventType.DEAL_OPENED, _deal())
        await audit.record(AuditEventType.ERROR, _deal(), error="quote failed", stage="deposit")

        async with session_factory() as session:
            events = await AuditRepository(session).get_by_deal("deal-audit")

        assert [e.event_type for e in events] == ["DEAL_OPENED", "ERROR"]
        assert events[1].metadata_json == {"stage": "deposit"}


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


class TestStats:
    @pytest.mark.asyncio
    async def test_profile_after_recorded_deal(self, session_factory) -> None:
        await SqlStatsSink(session_factory).record_completed_deal(_summary())

        async with session_factory() as session:
            service = StatsService(session)
            buyer = await service.user_profile("111")
            seller = await service.user_profile("222")

        assert buyer["total_deals"] == 1
        assert buyer["deals_as_buyer"] == 1
        assert buyer["total_spent"] == Decimal("40.50")
        assert buyer["total_fees_paid"] == Decimal("1.00")
        assert seller["total_earned"] == Decimal("39.50")
        # The anonymous seller still sees themselves in their own history.
        assert seller["recent_deals"][0]["seller_id"] == "222"
        assert buyer["recent_deals"][0]["seller_id"] is None

    @pytest.mark.asyncio
    async def test_unknown_user_has_empty_profile(self, db_session) -> None:
        profile = await StatsService(db_session).user_profile("nobody")
        assert profile["total_deals"] == 0
        assert profile["recent_deals"] == []

    @pytest.mark.asyncio
    async def test_leaderboards(self, session_factory) -> None:
        sink = SqlStatsSink(session_factory)
        await sink.record_completed_deal(_summary("deal-1"))
        await sink.record_completed_deal(
            _summary("deal-2", buyer_id="333", buyer_paid_usd=Decimal("100.00"))
        )

        async with session_factory() as session:
            service = StatsService(session)
            traders = await service.leaderboard("traders")
            buyers = await service.leaderboard("buyers")
            sellers = await service.leaderboard("sellers")

        assert traders[0]["user_id"] == "222"
        assert traders[0]["total_deals"] == 2
        assert [b["user_id"] for b in buyers] == ["333", "111"]
        assert [s["user_id"] for s in sellers] == ["222"]

    @pytest.mark.asyncio
    async def test_unknown_leaderboard(self, db_session) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await StatsService(db_session).leaderboard("whales")
        assert exc_info.value.code == "UNKNOWN_LEADERBOARD"

    @pytest.mark.asyncio
    async def test_analytics_and_coin_filter(self, session_factory) -> None:
        sink = SqlStatsSink(session_factory)
        await sink.record_completed_deal(_summary("deal-1"))
        await sink.record_completed_deal(_summary("deal-2", asset="BTC"))

        async with session_factory() as session:
            service = StatsService(session)
            analytics = await service.analytics()
            ltc_deals = await service.deals_by_coin("ltc")

        assert {row["coin"] for row in analytics["by_coin"]} == {"LTC", "BTC"}
        assert len(analytics["recent_deals"]) == 2
        assert [d["deal_id"] for d in ltc_deals] == ["deal-1"]
        assert ltc_deals[0]["buyer_id"] == "111"

    @pytest.mark.asyncio
    async def test_duplicate_deal_is_not_raised(self, session_factory) -> None:
        sink = SqlStatsSink(session_factory)
        await sink.record_completed_deal(_summary())
        await sink.record_completed_deal(_summary())

        async with session_factory() as session:
            profile = await StatsService(session).user_profile("111")
        assert profile["total_deals"] == 1
