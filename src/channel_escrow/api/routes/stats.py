"""Completed-deal statistics routes.

Routes:
    GET /api/v1/stats/users/{user_id}        Per-user totals and recent deals
    GET /api/v1/stats/leaderboard/{kind}     traders | buyers | sellers
    GET /api/v1/stats/analytics              Fees and volume per coin, recent deals
    GET /api/v1/stats/coins/{coin}/deals     Completed deals for one coin
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from channel_escrow.api.deps import get_stats_service
from channel_escrow.schemas.deals import (
    AnalyticsResponse,
    CompletedDealResponse,
    UserProfileResponse,
    UserStatsResponse,
)
from channel_escrow.services.stats_service import StatsService

router = APIRouter(prefix="/api/v1/stats", tags=["Stats"])


@router.get("/users/{user_id}", response_model=UserProfileResponse)
async def user_profile(
    user_id: str,
    recent: int = Query(default=10, ge=1, le=100),
    stats: StatsService = Depends(get_stats_service),
) -> UserProfileResponse:
    return UserProfileResponse.model_validate(await stats.user_profile(user_id, recent))


@router.get("/leaderboard/{kind}", response_model=list[UserStatsResponse])
async def leaderboard(
    kind: str,
    limit: int = Query(default=10, ge=1, le=100),
    stats: StatsService = Depends(get_stats_service),
) -> list[UserStatsResponse]:
    rows = await stats.leaderboard(kind, limit)
    return [UserStatsResponse.model_validate(r) for r in rows]


@router.get("/analytics", response_model=AnalyticsResponse)
async def analytics(
    stats: StatsService = Depends(get_stats_service),
) -> AnalyticsResponse:
    """Operator view: commissions and deal volume grouped by coin."""
    return AnalyticsResponse.model_validate(await stats.analytics())


@router.get("/coins/{coin}/deals", response_model=list[CompletedDealResponse])
async def deals_by_coin(
    coin: str,
    limit: int = Query(default=50, ge=1, le=200),
    stats: StatsService = Depends(get_stats_service),
) -> list[CompletedDealResponse]:
    return [CompletedDealResponse.model_validate(d) for d in await stats.deals_by_coin(coin, limit)]
