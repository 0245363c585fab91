"""Pydantic schemas for the deal and stats API.

These schemas define the request/response shapes for the REST API. They are
separate from the domain record and the ORM models to keep clean boundaries
between the API, the orchestrator and the database layers.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - pydantic resolves field types at runtime
from decimal import Decimal  # noqa: TC003 - pydantic resolves field types at runtime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from channel_escrow.domain.enums import DealAction, DealStatus

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class OpenDealRequest(BaseModel):
    """Request body for opening a deal channel between two actors."""

    initiator: str = Field(..., min_length=1, max_length=64, examples=["111"])
    counterparty: str = Field(..., min_length=1, max_length=64, examples=["222"])
    asset: str = Field(
        ...,
        min_length=2,
        max_length=10,
        description="Coin symbol from the registry",
        examples=["LTC"],
    )


class ActionRequest(BaseModel):
    """A button press from a participant."""

    actor_id: str = Field(..., min_length=1, max_length=64)
    action: DealAction
    value: str | None = Field(
        default=None,
        max_length=64,
        description="Ballot choice for vote actions, e.g. 'split' or 'anonymous'",
    )


class MessageRequest(BaseModel):
    """A free-text message a participant posts in the deal channel."""

    actor_id: str = Field(..., min_length=1, max_length=64)
    text: str = Field(..., min_length=1, max_length=2000)


class ResolveRequest(BaseModel):
    """Operator resolution of an escalated deal."""

    outcome: Literal["completed", "refunded"]
    tx_ref: str | None = Field(
        default=None,
        max_length=128,
        description="Reference of the transfer the operator made by hand",
    )
    note: str | None = Field(default=None, max_length=1000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class DealResponse(BaseModel):
    """Current state of an open deal."""

    deal_id: str
    status: DealStatus
    asset: str
    initiator: str
    counterparty: str
    buyer: str | None = None
    seller: str | None = None
    deal_amount_usd: Decimal | None = None
    fee_usd: Decimal | None = None
    fee_payer: str | None = None
    buyer_pays_usd: Decimal | None = None
    seller_receives_usd: Decimal | None = None
    buyer_pays_crypto: Decimal | None = None
    seller_receives_crypto: Decimal | None = None
    deposit_address: str | None = None
    deposit_network: str | None = None
    deposit_tx_ref: str | None = None
    payout_tx_ref: str | None = None
    refund_tx_ref: str | None = None
    seller_payout_address: str | None = None
    escalation_reason: str | None = None
    created_at: datetime
    payment_started_at: datetime | None = None
    completed_at: datetime | None = None
    allowed_actions: list[str] = Field(
        default_factory=list,
        description="Actions a participant can take right now",
    )
    allowed_events: list[str] = Field(
        default_factory=list,
        description="State machine events that can fire from the current status",
    )


class ActionResponse(BaseModel):
    """Outcome of a participant action."""

    ok: bool
    status: DealStatus
    code: str | None = None
    message: str | None = None


class MessageAccepted(BaseModel):
    delivered: bool = Field(
        description="True if the deal was waiting for input from this actor"
    )


class ChannelMessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    message_id: str
    author: str
    text: str
    options: list[dict[str, str | None]] = Field(default_factory=list)


class UserStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    total_deals: int
    deals_as_buyer: int
    deals_as_seller: int
    total_spent: Decimal
    total_earned: Decimal
    total_fees_paid: Decimal
    net_position: Decimal
    last_deal_at: datetime | None = None


class CompletedDealResponse(BaseModel):
    """Public view of a completed deal. Anonymous parties are null."""

    deal_id: str
    coin: str
    deal_amount: Decimal
    service_fee: Decimal
    buyer_id: str | None = None
    seller_id: str | None = None
    tx_hash: str | None = None
    completed_at: datetime


class UserProfileResponse(UserStatsResponse):
    recent_deals: list[CompletedDealResponse] = Field(default_factory=list)


class CoinTotals(BaseModel):
    coin: str
    total_usd: Decimal | None = None
    total_crypto: Decimal | None = None


class CoinDealStats(BaseModel):
    coin: str
    total_deals: int
    total_volume: Decimal | None = None
    total_fees: Decimal | None = None
    avg_deal_size: Decimal | None = None


class AnalyticsResponse(BaseModel):
    commissions: list[CoinTotals]
    by_coin: list[CoinDealStats]
    recent_deals: list[CompletedDealResponse]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="'ok' or 'degraded'")
    version: str
    database: str
    redis: str
    open_deals: int = 0
