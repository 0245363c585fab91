"""Completed-deal statistics.

``SqlStatsSink`` is the orchestrator's StatsSink: it persists each completed
deal in its own transaction and only logs failures, because a stats outage
must never affect a deal that has already paid out. ``StatsService`` backs
the read-only stats routes.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from channel_escrow.domain.exceptions import ValidationError
from channel_escrow.infrastructure.database.repositories import DealStatsRepository
from channel_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from channel_escrow.domain.protocols import CompletedDealSummary
    from channel_escrow.infrastructure.database.orm_models import CompletedDeal, UserStats

logger = get_logger(__name__)

LEADERBOARD_KINDS = ("traders", "buyers", "sellers")


class SqlStatsSink:
    """StatsSink writing to the completed_deals / user_stats / commissions tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record_completed_deal(self, summary: CompletedDealSummary) -> None:
        try:
            async with self._session_factory() as session:
                await DealStatsRepository(session).save_deal(summary)
                await session.commit()
        except IntegrityError:
            logger.warning("stats.duplicate_deal", deal_id=summary.deal_id)
        except SQLAlchemyError as exc:
            logger.error("stats.record_failed", deal_id=summary.deal_id, error=str(exc))
        else:
            logger.info(
                "stats.deal_recorded",
                deal_id=summary.deal_id,
                asset=summary.asset,
                amount=str(summary.deal_amount_usd),
            )


class InMemoryStatsSink:
    """StatsSink that keeps summaries in a list (no database configured)."""

    def __init__(self) -> None:
        self.summaries: list[CompletedDealSummary] = []

    async def record_completed_deal(self, summary: CompletedDealSummary) -> None:
        self.summaries.append(summary)


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


def _user_dict(stats: UserStats) -> dict[str, Any]:
    return {
        "user_id": stats.user_id,
        "total_deals": stats.total_deals,
        "deals_as_buyer": stats.deals_as_buyer,
        "deals_as_seller": stats.deals_as_seller,
        "total_spent": Decimal(stats.total_spent),
        "total_earned": Decimal(stats.total_earned),
        "total_fees_paid": Decimal(stats.total_fees_paid),
        "net_position": stats.net_position,
        "last_deal_at": stats.last_deal_at,
    }


def _deal_dict(deal: CompletedDeal, viewer: str | None = None) -> dict[str, Any]:
    """Public view of a completed deal; anonymous parties are masked."""

    def shown(user_id: str, privacy: str) -> str | None:
        if privacy == "public" or user_id == viewer:
            return user_id
        return None

    return {
        "deal_id": deal.deal_id,
        "coin": deal.coin,
        "deal_amount": Decimal(deal.deal_amount),
        "service_fee": Decimal(deal.service_fee),
        "buyer_id": shown(deal.buyer_id, deal.buyer_privacy),
        "seller_id": shown(deal.seller_id, deal.seller_privacy),
        "tx_hash": deal.tx_hash,
        "completed_at": deal.completed_at,
    }


class StatsService:
    """Query facade over ``DealStatsRepository``."""

    def __init__(self, session: AsyncSession) -> None:
        self._repo = DealStatsRepository(session)

    async def user_profile(self, user_id: str, recent: int = 10) -> dict[str, Any]:
        stats = await self._repo.get_user_stats(user_id)
        deals = await self._repo.get_user_deals(user_id, limit=recent)
        if stats is None:
            profile: dict[str, Any] = {
                "user_id": user_id,
                "total_deals": 0,
                "deals_as_buyer": 0,
                "deals_as_seller": 0,
                "total_spent": Decimal("0"),
                "total_earned": Decimal("0"),
                "total_fees_paid": Decimal("0"),
                "net_position": Decimal("0"),
                "last_deal_at": None,
            }
        else:
            profile = _user_dict(stats)
        profile["recent_deals"] = [_deal_dict(d, viewer=user_id) for d in deals]
        return profile

    async def leaderboard(self, kind: str, limit: int = 10) -> list[dict[str, Any]]:
        """Rank users by deal count, spend or earnings.

        Raises:
            ValidationError: If ``kind`` is not one of LEADERBOARD_KINDS.
        """
        if kind == "traders":
            rows = await self._repo.top_traders(limit)
        elif kind == "buyers":
            rows = await self._repo.top_buyers(limit)
        elif kind == "sellers":
            rows = await self._repo.top_sellers(limit)
        else:
            raise ValidationError(
                f"Unknown leaderboard '{kind}'. Choose one of: {', '.join(LEADERBOARD_KINDS)}",
                code="UNKNOWN_LEADERBOARD",
            )
        return [_user_dict(r) for r in rows]

    async def analytics(self, recent: int = 20) -> dict[str, Any]:
        return {
            "commissions": await self._repo.commission_totals(),
            "by_coin": await self._repo.deal_stats(),
            "recent_deals": [_deal_dict(d) for d in await self._repo.recent_deals(recent)],
        }

    async def deals_by_coin(self, coin: str, limit: int = 50) -> list[dict[str, Any]]:
        return [_deal_dict(d) for d in await self._repo.deals_by_coin(coin.upper(), limit)]
