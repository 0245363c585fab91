"""Domain enumerations for the escrow coordinator.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class DealStatus(enum.StrEnum):
    """Lifecycle states of a deal.

    State transitions are enforced by the DealStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    AWAITING_ROLE_SELECTION = "awaiting_role_selection"
    AWAITING_AMOUNT = "awaiting_amount"
    AWAITING_SELLER_APPROVAL = "awaiting_seller_approval"
    AWAITING_FEE_AGREEMENT = "awaiting_fee_agreement"
    AWAITING_DEPOSIT = "awaiting_deposit"
    AWAITING_DELIVERY = "awaiting_delivery"
    AWAITING_RECEIPT_CONFIRMATION = "awaiting_receipt_confirmation"
    AWAITING_PAYOUT_ADDRESS = "awaiting_payout_address"
    AWAITING_PAYOUT_CONFIRMATION = "awaiting_payout_confirmation"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    REFUND_FLOW = "refund_flow"
    REFUNDED = "refunded"
    TIMED_OUT = "timed_out"
    ESCALATED = "escalated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_pre_payment(self) -> bool:
        return self in PRE_PAYMENT_STATUSES


TERMINAL_STATUSES = frozenset(
    {DealStatus.COMPLETED, DealStatus.REFUNDED, DealStatus.TIMED_OUT}
)

PRE_PAYMENT_STATUSES = frozenset(
    {
        DealStatus.AWAITING_ROLE_SELECTION,
        DealStatus.AWAITING_AMOUNT,
        DealStatus.AWAITING_SELLER_APPROVAL,
        DealStatus.AWAITING_FEE_AGREEMENT,
    }
)

# Funded states in which the buyer has not yet acknowledged delivery.
REFUND_ELIGIBLE_STATUSES = frozenset(
    {DealStatus.AWAITING_DEPOSIT, DealStatus.AWAITING_DELIVERY}
)


class Role(enum.StrEnum):
    """Role an actor holds in a deal."""

    BUYER = "buyer"
    SELLER = "seller"


class FeePayer(enum.StrEnum):
    """Which side's settlement amount absorbs the service fee."""

    BUYER = "buyer_pays"
    SELLER = "seller_pays"
    SPLIT = "split"


class PrivacyChoice(enum.StrEnum):
    """Whether an actor's identity is shown in the public completed-deal record."""

    PUBLIC = "public"
    ANONYMOUS = "anonymous"


class CloseChoice(enum.StrEnum):
    """Close-ballot vote."""

    CLOSE = "close"
    KEEP_OPEN = "keep_open"


class DealAction(enum.StrEnum):
    """Discrete participant actions (button presses in the channel)."""

    CLAIM_BUYER = "claim_buyer"
    CLAIM_SELLER = "claim_seller"
    RESET_ROLES = "reset_roles"
    APPROVE_AMOUNT = "approve_amount"
    REJECT_AMOUNT = "reject_amount"
    VOTE_FEE_PAYER = "vote_fee_payer"
    CONFIRM_DELIVERY = "confirm_delivery"
    CONFIRM_RECEIPT = "confirm_receipt"
    REPORT_NOT_RECEIVED = "report_not_received"
    APPROVE_REFUND = "approve_refund"
    ESCALATE = "escalate"
    CONFIRM_PAYOUT = "confirm_payout"
    CANCEL_PAYOUT = "cancel_payout"
    VOTE_PRIVACY = "vote_privacy"
    VOTE_CLOSE = "vote_close"


class DepositStatus(enum.StrEnum):
    """Status of an inbound deposit as reported by the payment rail."""

    PENDING = "pending"
    CREDITED = "credited"
    SUCCESS = "success"
    FAILED = "failed"


class AuditEventType(enum.StrEnum):
    """Types of payment-relevant events written to the audit log.

    The audit log is append-only and consumed externally for reconciliation.
    """

    DEAL_OPENED = "DEAL_OPENED"
    DEPOSIT_ADDRESS_ISSUED = "DEPOSIT_ADDRESS_ISSUED"
    DEPOSIT_DETECTED = "DEPOSIT_DETECTED"
    DEPOSIT_CONFIRMED = "DEPOSIT_CONFIRMED"
    WITHDRAWAL = "WITHDRAWAL"
    WITHDRAWAL_FAILED = "WITHDRAWAL_FAILED"
    REFUND = "REFUND"
    REFUND_FAILED = "REFUND_FAILED"
    DISPUTE_RAISED = "DISPUTE_RAISED"
    ESCALATED = "ESCALATED"
    TIMEOUT = "TIMEOUT"
    DEAL_COMPLETED = "DEAL_COMPLETED"
    DEAL_CLOSED = "DEAL_CLOSED"
    ERROR = "ERROR"
