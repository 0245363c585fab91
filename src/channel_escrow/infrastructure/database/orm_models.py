"""SQLAlchemy 2.0 ORM models for the escrow coordinator.

Four tables:
    1. audit_events:     Append-only record of payment-relevant events.
    2. completed_deals:  One row per deal that reached payout.
    3. user_stats:       Per-user aggregates feeding stats and leaderboards.
    4. commissions:      Service fee earned per deal, in USD and crypto.

Design decisions:
    - Active deals live in memory; only finished deals and the audit trail
      are persisted.
    - Decimal for every amount (no floating point rounding errors).
    - Portable column types (Uuid, JSON) so the same models run on
      PostgreSQL in production and SQLite in tests.
    - audit_events is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


USD = Numeric(18, 2)
CRYPTO = Numeric(28, 8)


# ---------------------------------------------------------------------------
# 1. audit_events (Append-Only)
# ---------------------------------------------------------------------------
class AuditEvent(Base):
    """Immutable record of a payment-relevant event.

    This table is APPEND-ONLY. It is written by the orchestrator and read
    only by external reconciliation tooling.
    """

    __tablename__ = "audit_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    deal_id: Mapped[str] = mapped_column(String(64), nullable=False)
    asset: Mapped[str | None] = mapped_column(String(10), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(
        CRYPTO,
        nullable=True,
        comment="Crypto amount moved or expected by this event",
    )
    tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    buyer: Mapped[str | None] = mapped_column(String(64), nullable=True)
    seller: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
        default=None,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_audit_deal", "deal_id"),
        Index("idx_audit_type", "event_type"),
        Index("idx_audit_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditEvent {self.event_type} deal={self.deal_id} tx={self.tx_ref}>"


# ---------------------------------------------------------------------------
# 2. completed_deals
# ---------------------------------------------------------------------------
class CompletedDeal(Base):
    """A finished escrow deal."""

    __tablename__ = "completed_deals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    coin: Mapped[str] = mapped_column(String(10), nullable=False)

    deal_amount: Mapped[Decimal] = mapped_column(USD, nullable=False)
    service_fee: Mapped[Decimal] = mapped_column(USD, nullable=False)
    buyer_paid: Mapped[Decimal] = mapped_column(USD, nullable=False)
    seller_received: Mapped[Decimal] = mapped_column(USD, nullable=False)
    crypto_amount: Mapped[Decimal] = mapped_column(CRYPTO, nullable=False)
    seller_crypto_amount: Mapped[Decimal] = mapped_column(CRYPTO, nullable=False)

    tx_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    buyer_privacy: Mapped[str] = mapped_column(String(16), nullable=False)
    seller_privacy: Mapped[str] = mapped_column(String(16), nullable=False)

    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_deal_buyer", "buyer_id"),
        Index("idx_deal_seller", "seller_id"),
        Index("idx_deal_completed_at", "completed_at"),
        Index("idx_deal_coin", "coin"),
    )

    def __repr__(self) -> str:
        return f"<CompletedDeal {self.deal_id} {self.deal_amount} USD in {self.coin}>"


# ---------------------------------------------------------------------------
# 3. user_stats
# ---------------------------------------------------------------------------
class UserStats(Base):
    """Running totals per user, updated in the same transaction as the deal row."""

    __tablename__ = "user_stats"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_deals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deals_as_buyer: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deals_as_seller: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_spent: Mapped[Decimal] = mapped_column(USD, nullable=False, default=0)
    total_earned: Mapped[Decimal] = mapped_column(USD, nullable=False, default=0)
    total_fees_paid: Mapped[Decimal] = mapped_column(USD, nullable=False, default=0)
    last_deal_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    @property
    def net_position(self) -> Decimal:
        return self.total_earned - self.total_spent


# ---------------------------------------------------------------------------
# 4. commissions
# ---------------------------------------------------------------------------
class Commission(Base):
    """Service fee earned on one deal."""

    __tablename__ = "commissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[str] = mapped_column(String(64), nullable=False)
    coin: Mapped[str] = mapped_column(String(10), nullable=False)
    amount_crypto: Mapped[Decimal] = mapped_column(CRYPTO, nullable=False)
    amount_usd: Mapped[Decimal] = mapped_column(USD, nullable=False)
    earned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_commission_coin", "coin"),)
