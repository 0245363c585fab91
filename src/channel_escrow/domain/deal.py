"""Deal Record: the mutable state of one negotiation channel.

Mutated only by the orchestrator. Write-once fields (fee, inbound and
outbound transaction references) go through setters that refuse a second
write, which is what makes "at most one payout per deal" checkable at the
data level and not only in control flow.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - dataclass field types

from channel_escrow.domain.ballot import Ballot, FinalizeGuard
from channel_escrow.domain.enums import (
    CloseChoice,
    DealStatus,
    FeePayer,
    PrivacyChoice,
    Role,
)
from channel_escrow.domain.exceptions import ImmutableFieldError, RoleConflictError
from channel_escrow.domain.protocols import DepositRecord  # noqa: TC001 - dataclass field types


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class DealRecord:
    """State of one buyer/seller escrow negotiation."""

    deal_id: str
    initiator: str
    counterparty: str
    asset: str
    status: DealStatus = DealStatus.AWAITING_ROLE_SELECTION

    # --- Roles ---
    buyer: str | None = None
    seller: str | None = None

    # --- Amounts (USD) ---
    deal_amount_usd: Decimal | None = None
    fee_payer: FeePayer | None = None
    buyer_pays_usd: Decimal | None = None
    seller_receives_usd: Decimal | None = None

    # --- Amounts (crypto) ---
    buyer_pays_crypto: Decimal | None = None
    seller_receives_crypto: Decimal | None = None
    buyer_rate: Decimal | None = None
    seller_rate: Decimal | None = None

    # --- Deposit ---
    deposit_address: str | None = None
    deposit_network: str | None = None
    deposit_quote_timestamp: datetime | None = None
    deposit_detected: bool = False
    deposit_confirmations: int = 0
    # Latest rail view of the deposit this deal claimed.
    deposit: DepositRecord | None = None
    # Absolute timeout fired while the deposit was still confirming.
    refund_on_settle: bool = False

    # --- Payout / refund ---
    seller_payout_address: str | None = None
    buyer_refund_address: str | None = None
    escalation_reason: str | None = None

    # --- Ballots ---
    fee_ballot: Ballot[FeePayer] = field(default_factory=lambda: Ballot("fee payer"))
    privacy_ballot: Ballot[PrivacyChoice] = field(default_factory=lambda: Ballot("privacy"))
    close_ballot: Ballot[CloseChoice] = field(default_factory=lambda: Ballot("close"))

    # --- One-shot guards for irreversible steps ---
    deposit_guard: FinalizeGuard = field(default_factory=FinalizeGuard)
    payout_guard: FinalizeGuard = field(default_factory=FinalizeGuard)
    refund_guard: FinalizeGuard = field(default_factory=FinalizeGuard)
    summary_guard: FinalizeGuard = field(default_factory=FinalizeGuard)
    teardown_guard: FinalizeGuard = field(default_factory=FinalizeGuard)

    # --- Retry counters ---
    amount_attempts: int = 0
    address_attempts: int = 0

    # --- Timestamps ---
    created_at: datetime = field(default_factory=_now)
    last_activity_at: datetime = field(default_factory=_now)
    payment_started_at: datetime | None = None
    completed_at: datetime | None = None

    # --- Write-once fields ---
    _fee_usd: Decimal | None = field(default=None, repr=False)
    _deposit_tx_ref: str | None = field(default=None, repr=False)
    _payout_tx_ref: str | None = field(default=None, repr=False)
    _refund_tx_ref: str | None = field(default=None, repr=False)

    # ------------------------------------------------------------------
    # Participants and roles
    # ------------------------------------------------------------------

    @property
    def participants(self) -> tuple[str, str]:
        return (self.initiator, self.counterparty)

    def is_participant(self, actor_id: str) -> bool:
        return actor_id in self.participants

    def role_of(self, actor_id: str) -> Role | None:
        if actor_id == self.buyer:
            return Role.BUYER
        if actor_id == self.seller:
            return Role.SELLER
        return None

    def other_party(self, actor_id: str) -> str:
        return self.counterparty if actor_id == self.initiator else self.initiator

    def claim_role(self, actor_id: str, role: Role) -> None:
        """Assign ``role`` to ``actor_id``.

        Raises:
            RoleConflictError: If the role is taken or the actor already holds a role.
        """
        held = self.role_of(actor_id)
        if held is role:
            raise RoleConflictError(f"You are already the {role.value}.")
        if held is not None:
            raise RoleConflictError(
                f"You are already the {held.value}; one person cannot hold both roles."
            )
        current = self.buyer if role is Role.BUYER else self.seller
        if current is not None:
            raise RoleConflictError(f"The {role.value} role is already taken.")
        if role is Role.BUYER:
            self.buyer = actor_id
        else:
            self.seller = actor_id

    def reset_roles(self) -> None:
        self.buyer = None
        self.seller = None

    @property
    def roles_complete(self) -> bool:
        return self.buyer is not None and self.seller is not None

    # ------------------------------------------------------------------
    # Write-once fields
    # ------------------------------------------------------------------

    @property
    def fee_usd(self) -> Decimal | None:
        return self._fee_usd

    @fee_usd.setter
    def fee_usd(self, value: Decimal) -> None:
        if self._fee_usd is not None:
            raise ImmutableFieldError(self.deal_id, "fee_usd")
        self._fee_usd = value

    @property
    def deposit_tx_ref(self) -> str | None:
        return self._deposit_tx_ref

    @deposit_tx_ref.setter
    def deposit_tx_ref(self, value: str) -> None:
        if self._deposit_tx_ref is not None:
            raise ImmutableFieldError(self.deal_id, "deposit_tx_ref")
        self._deposit_tx_ref = value

    @property
    def payout_tx_ref(self) -> str | None:
        return self._payout_tx_ref

    @payout_tx_ref.setter
    def payout_tx_ref(self, value: str) -> None:
        if self._payout_tx_ref is not None:
            raise ImmutableFieldError(self.deal_id, "payout_tx_ref")
        self._payout_tx_ref = value

    @property
    def refund_tx_ref(self) -> str | None:
        return self._refund_tx_ref

    @refund_tx_ref.setter
    def refund_tx_ref(self, value: str) -> None:
        if self._refund_tx_ref is not None:
            raise ImmutableFieldError(self.deal_id, "refund_tx_ref")
        self._refund_tx_ref = value

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    @property
    def payment_started(self) -> bool:
        return self.payment_started_at is not None

    def touch(self) -> None:
        self.last_activity_at = _now()

    def clear_amount(self) -> None:
        """Forget the entered amount so it can be collected again."""
        self.deal_amount_usd = None
        self.amount_attempts = 0

    def snapshot(self) -> dict:
        """Serializable view of the record for APIs and logs."""
        return {
            "deal_id": self.deal_id,
            "status": self.status.value,
            "asset": self.asset,
            "initiator": self.initiator,
            "counterparty": self.counterparty,
            "buyer": self.buyer,
            "seller": self.seller,
            "deal_amount_usd": self.deal_amount_usd,
            "fee_usd": self.fee_usd,
            "fee_payer": self.fee_payer.value if self.fee_payer else None,
            "buyer_pays_usd": self.buyer_pays_usd,
            "seller_receives_usd": self.seller_receives_usd,
            "buyer_pays_crypto": self.buyer_pays_crypto,
            "seller_receives_crypto": self.seller_receives_crypto,
            "deposit_address": self.deposit_address,
            "deposit_network": self.deposit_network,
            "deposit_tx_ref": self.deposit_tx_ref,
            "payout_tx_ref": self.payout_tx_ref,
            "refund_tx_ref": self.refund_tx_ref,
            "seller_payout_address": self.seller_payout_address,
            "escalation_reason": self.escalation_reason,
            "created_at": self.created_at,
            "payment_started_at": self.payment_started_at,
            "completed_at": self.completed_at,
        }
