"""Domain layer: pure business logic with zero framework dependencies."""

from channel_escrow.domain.ballot import Ballot, FinalizeGuard
from channel_escrow.domain.coins import CoinSpec, get_coin, supported_symbols
from channel_escrow.domain.deal import DealRecord
from channel_escrow.domain.enums import (
    AuditEventType,
    CloseChoice,
    DealAction,
    DealStatus,
    DepositStatus,
    FeePayer,
    PrivacyChoice,
    Role,
)
from channel_escrow.domain.exceptions import (
    AlreadyVotedError,
    DealNotFoundError,
    EscrowError,
    InvalidStateTransitionError,
    RailError,
    RoleConflictError,
    ValidationError,
)
from channel_escrow.domain.state_machine import DealStateMachine, validate_transition

__all__ = [
    "Ballot",
    "FinalizeGuard",
    "CoinSpec",
    "get_coin",
    "supported_symbols",
    "DealRecord",
    "AuditEventType",
    "CloseChoice",
    "DealAction",
    "DealStatus",
    "DepositStatus",
    "FeePayer",
    "PrivacyChoice",
    "Role",
    "AlreadyVotedError",
    "DealNotFoundError",
    "EscrowError",
    "InvalidStateTransitionError",
    "RailError",
    "RoleConflictError",
    "ValidationError",
    "DealStateMachine",
    "validate_transition",
]
