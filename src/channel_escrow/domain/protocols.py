"""Collaborator protocols and the value objects that cross them.

The orchestrator talks to the outside world only through these narrow
interfaces. They are Protocols (structural subtyping) so concrete
implementations don't need to inherit from a base class; they just need to
match the shape.

The domain layer has ZERO imports from httpx, Redis, SQLAlchemy or any
chat-platform SDK.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime  # noqa: TC003 - dataclass field types
from decimal import Decimal  # noqa: TC003 - dataclass field types
from typing import Protocol, runtime_checkable

from channel_escrow.domain.enums import DealAction, DepositStatus

# ---------------------------------------------------------------------------
# Payment Rail
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Quote:
    """A USD -> crypto conversion at one instant."""

    asset: str
    usd_amount: Decimal
    crypto_amount: Decimal
    rate: Decimal
    quoted_at: datetime


@dataclass(frozen=True)
class DepositAddress:
    """Custodial address the buyer sends funds to."""

    asset: str
    address: str
    network: str
    tag: str | None = None


@dataclass(frozen=True)
class DepositRecord:
    """One inbound transfer as seen by the rail."""

    asset: str
    amount: Decimal
    tx_ref: str
    confirmations: int
    status: DepositStatus
    inserted_at: datetime
    address: str | None = None


@dataclass(frozen=True)
class WithdrawalReceipt:
    """Rail acknowledgement of an outbound transfer."""

    tx_ref: str
    withdraw_id: str | None = None


@runtime_checkable
class PaymentRail(Protocol):
    """Custodial exchange / wallet service.

    Every call either fully succeeds or raises RailError.
    """

    async def quote(self, asset: str, usd_amount: Decimal) -> Quote: ...

    async def issue_deposit_address(self, asset: str) -> DepositAddress: ...

    async def poll_deposits(self, asset: str, since: datetime) -> list[DepositRecord]: ...

    async def withdraw(
        self,
        asset: str,
        amount: Decimal,
        destination: str,
        network: str,
    ) -> WithdrawalReceipt: ...


# ---------------------------------------------------------------------------
# Messaging Surface
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PromptOption:
    """One button of an interactive prompt."""

    action: DealAction
    label: str
    value: str | None = None


@dataclass(frozen=True)
class Prompt:
    """Interactive choices attached to a channel message."""

    options: tuple[PromptOption, ...] = ()


@runtime_checkable
class MessagingSurface(Protocol):
    """Chat platform capability used by the orchestrator."""

    async def create_channel(self, initiator: str, counterparty: str) -> str: ...

    async def delete_channel(self, channel_id: str) -> None: ...

    async def channel_exists(self, channel_id: str) -> bool: ...

    async def send_message(
        self,
        channel_id: str,
        text: str,
        *,
        prompt: Prompt | None = None,
        mentions: tuple[str, ...] = (),
    ) -> str: ...

    async def edit_message(
        self,
        channel_id: str,
        message_id: str,
        text: str,
        *,
        prompt: Prompt | None = None,
    ) -> None: ...

    async def delete_message(self, channel_id: str, message_id: str) -> None: ...

    async def set_posting_allowed(
        self, channel_id: str, actor_id: str, allowed: bool
    ) -> None: ...

    async def collect_message(
        self, channel_id: str, actor_id: str, timeout: float
    ) -> str | None:
        """Return the next message ``actor_id`` posts in the channel, or None on timeout."""
        ...


# ---------------------------------------------------------------------------
# Stats sink and payout guard
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompletedDealSummary:
    """Everything the stats store keeps about a completed deal."""

    deal_id: str
    buyer_id: str
    seller_id: str
    asset: str
    deal_amount_usd: Decimal
    fee_usd: Decimal
    buyer_paid_usd: Decimal
    seller_received_usd: Decimal
    buyer_paid_crypto: Decimal
    seller_received_crypto: Decimal
    payout_tx_ref: str
    buyer_privacy: str
    seller_privacy: str
    completed_at: datetime
    extra: dict = field(default_factory=dict)


@runtime_checkable
class StatsSink(Protocol):
    """Consumer of completed-deal events. Failures are logged, not propagated."""

    async def record_completed_deal(self, summary: CompletedDealSummary) -> None: ...


@runtime_checkable
class PayoutGuard(Protocol):
    """Process-external at-most-once claim for outbound transfers."""

    async def claim(self, deal_id: str, kind: str) -> bool:
        """Return True the first time ``(deal_id, kind)`` is claimed, False after."""
        ...
