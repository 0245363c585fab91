"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select

from channel_escrow.infrastructure.database.orm_models import (
    AuditEvent,
    Commission,
    CompletedDeal,
    UserStats,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from channel_escrow.domain.protocols import CompletedDealSummary


class AuditRepository:
    """Data access for the append-only audit trail."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        event_type: str,
        deal_id: str,
        *,
        asset: str | None = None,
        amount: Decimal | None = None,
        tx_ref: str | None = None,
        buyer: str | None = None,
        seller: str | None = None,
        error: str | None = None,
        metadata: dict | None = None,
        created_at: datetime | None = None,
    ) -> AuditEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = AuditEvent(
            event_type=event_type,
            deal_id=deal_id,
            asset=asset,
            amount=amount,
            tx_ref=tx_ref,
            buyer=buyer,
            seller=seller,
            error=error,
            metadata_json=metadata,
            created_at=created_at or datetime.now(UTC),
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_deal(self, deal_id: str) -> list[AuditEvent]:
        """Fetch all events for a deal in chronological order."""
        result = await self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.deal_id == deal_id)
            .order_by(AuditEvent.created_at.asc())
        )
        return list(result.scalars().all())


class DealStatsRepository:
    """Data access for completed deals, per-user aggregates and commissions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save_deal(self, summary: CompletedDealSummary) -> CompletedDeal:
        """Insert the deal, bump both users' aggregates and record the commission."""
        deal = CompletedDeal(
            deal_id=summary.deal_id,
            buyer_id=summary.buyer_id,
            seller_id=summary.seller_id,
            coin=summary.asset,
            deal_amount=summary.deal_amount_usd,
            service_fee=summary.fee_usd,
            buyer_paid=summary.buyer_paid_usd,
            seller_received=summary.seller_received_usd,
            crypto_amount=summary.buyer_paid_crypto,
            seller_crypto_amount=summary.seller_received_crypto,
            tx_hash=summary.payout_tx_ref,
            buyer_privacy=summary.buyer_privacy,
            seller_privacy=summary.seller_privacy,
            completed_at=summary.completed_at,
        )
        self._session.add(deal)

        buyer = await self._get_or_create_stats(summary.buyer_id)
        buyer.total_deals += 1
        buyer.deals_as_buyer += 1
        buyer.total_spent = Decimal(buyer.total_spent) + summary.buyer_paid_usd
        buyer.total_fees_paid = Decimal(buyer.total_fees_paid) + summary.fee_usd
        buyer.last_deal_at = summary.completed_at

        seller = await self._get_or_create_stats(summary.seller_id)
        seller.total_deals += 1
        seller.deals_as_seller += 1
        seller.total_earned = Decimal(seller.total_earned) + summary.seller_received_usd
        seller.last_deal_at = summary.completed_at

        self._session.add(
            Commission(
                deal_id=summary.deal_id,
                coin=summary.asset,
                amount_crypto=summary.buyer_paid_crypto - summary.seller_received_crypto,
                amount_usd=summary.fee_usd,
                earned_at=summary.completed_at,
            )
        )
        await self._session.flush()
        return deal

    async def _get_or_create_stats(self, user_id: str) -> UserStats:
        stats = await self._session.get(UserStats, user_id)
        if stats is None:
            stats = UserStats(
                user_id=user_id,
                total_deals=0,
                deals_as_buyer=0,
                deals_as_seller=0,
                total_spent=Decimal("0"),
                total_earned=Decimal("0"),
                total_fees_paid=Decimal("0"),
            )
            self._session.add(stats)
        return stats

    # ------------------------------------------------------------------
    # User statistics
    # ------------------------------------------------------------------

    async def get_user_stats(self, user_id: str) -> UserStats | None:
        return await self._session.get(UserStats, user_id)

    async def get_user_deals(self, user_id: str, limit: int = 10) -> list[CompletedDeal]:
        """Most recent deals a user took part in, either side."""
        result = await self._session.execute(
            select(CompletedDeal)
            .where(or_(CompletedDeal.buyer_id == user_id, CompletedDeal.seller_id == user_id))
            .order_by(CompletedDeal.completed_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Leaderboards
    # ------------------------------------------------------------------

    async def top_traders(self, limit: int = 10) -> list[UserStats]:
        result = await self._session.execute(
            select(UserStats).order_by(UserStats.total_deals.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def top_buyers(self, limit: int = 10) -> list[UserStats]:
        result = await self._session.execute(
            select(UserStats)
            .where(UserStats.deals_as_buyer > 0)
            .order_by(UserStats.total_spent.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def top_sellers(self, limit: int = 10) -> list[UserStats]:
        result = await self._session.execute(
            select(UserStats)
            .where(UserStats.deals_as_seller > 0)
            .order_by(UserStats.total_earned.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Operator analytics
    # ------------------------------------------------------------------

    async def commission_totals(self) -> list[dict[str, Any]]:
        """Fees earned, grouped by coin."""
        result = await self._session.execute(
            select(
                Commission.coin,
                func.sum(Commission.amount_usd).label("total_usd"),
                func.sum(Commission.amount_crypto).label("total_crypto"),
            ).group_by(Commission.coin)
        )
        return [dict(row._mapping) for row in result.all()]

    async def deal_stats(self) -> list[dict[str, Any]]:
        """Count, volume, fees and average deal size, grouped by coin."""
        result = await self._session.execute(
            select(
                CompletedDeal.coin,
                func.count(CompletedDeal.id).label("total_deals"),
                func.sum(CompletedDeal.deal_amount).label("total_volume"),
                func.sum(CompletedDeal.service_fee).label("total_fees"),
                func.avg(CompletedDeal.deal_amount).label("avg_deal_size"),
            ).group_by(CompletedDeal.coin)
        )
        return [dict(row._mapping) for row in result.all()]

    async def recent_deals(self, limit: int = 20) -> list[CompletedDeal]:
        result = await self._session.execute(
            select(CompletedDeal).order_by(CompletedDeal.completed_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Search & filters
    # ------------------------------------------------------------------

    async def get_by_deal_id(self, deal_id: str) -> CompletedDeal | None:
        result = await self._session.execute(
            select(CompletedDeal).where(CompletedDeal.deal_id == deal_id)
        )
        return result.scalar_one_or_none()

    async def deals_by_coin(self, coin: str, limit: int = 50) -> list[CompletedDeal]:
        result = await self._session.execute(
            select(CompletedDeal)
            .where(CompletedDeal.coin == coin)
            .order_by(CompletedDeal.completed_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def deals_by_date_range(
        self, start: datetime, end: datetime
    ) -> list[CompletedDeal]:
        result = await self._session.execute(
            select(CompletedDeal)
            .where(CompletedDeal.completed_at.between(start, end))
            .order_by(CompletedDeal.completed_at.desc())
        )
        return list(result.scalars().all())
