"""Domain exceptions for the escrow coordinator.

These exceptions are framework-agnostic and represent business rule violations.
Actor-facing ones are turned into channel messages by the orchestrator; the
rest are translated to HTTP responses by the API layer's middleware.
"""


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Actor input errors (recovered locally, never advance state) ---


class ValidationError(EscrowError):
    """Bad actor, action or input."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message=message, code=code)


class NotYourTurnError(ValidationError):
    """Raised when an actor performs an action reserved for the other role."""

    def __init__(self, actor_id: str, required: str) -> None:
        super().__init__(
            message=f"Only the {required} can do that right now.",
            code="NOT_YOUR_TURN",
        )
        self.actor_id = actor_id
        self.required = required


class RoleConflictError(EscrowError):
    """Raised when a role is already taken or an actor tries to hold both."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="ROLE_CONFLICT")


class AlreadyVotedError(EscrowError):
    """Raised when an actor casts a second vote on the same ballot."""

    def __init__(self, ballot: str, actor_id: str) -> None:
        super().__init__(
            message=f"You have already voted on the {ballot} ballot.",
            code="ALREADY_VOTED",
        )
        self.ballot = ballot
        self.actor_id = actor_id


class UnsupportedAssetError(EscrowError):
    """Raised when a coin symbol is not in the registry."""

    def __init__(self, symbol: str) -> None:
        super().__init__(
            message=f"Unsupported asset: {symbol}",
            code="UNSUPPORTED_ASSET",
        )
        self.symbol = symbol


# --- State Machine Errors ---


class InvalidStateTransitionError(EscrowError):
    """Raised when an attempted transition is not allowed from the current state."""

    def __init__(self, current_state: str, attempted: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -> {attempted}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted = attempted


class ImmutableFieldError(EscrowError):
    """Raised when a write-once field of a deal record is written twice."""

    def __init__(self, deal_id: str, field_name: str) -> None:
        super().__init__(
            message=f"Field {field_name} of deal {deal_id} is already set",
            code="IMMUTABLE_FIELD",
        )
        self.deal_id = deal_id
        self.field_name = field_name


# --- Deal Errors ---


class DealNotFoundError(EscrowError):
    """Raised when a deal id does not exist in the deal table."""

    def __init__(self, deal_id: str) -> None:
        super().__init__(
            message=f"Deal not found: {deal_id}",
            code="DEAL_NOT_FOUND",
        )
        self.deal_id = deal_id


class DealAlreadyOpenError(EscrowError):
    """Raised when a channel already holds an open deal."""

    def __init__(self, deal_id: str) -> None:
        super().__init__(
            message=f"Channel already has an open deal: {deal_id}",
            code="DEAL_ALREADY_OPEN",
        )
        self.deal_id = deal_id


# --- Payment Errors ---


class RailError(EscrowError):
    """Raised when a payment rail call fails. Calls never partially succeed."""

    def __init__(self, message: str, operation: str = "unknown") -> None:
        super().__init__(message=message, code="RAIL_ERROR")
        self.operation = operation


class PayoutEscalatedError(EscrowError):
    """Raised when an outbound transfer failed and needs an operator."""

    def __init__(self, deal_id: str, reason: str) -> None:
        super().__init__(
            message=f"Outbound transfer for deal {deal_id} needs manual resolution: {reason}",
            code="PAYOUT_ESCALATED",
        )
        self.deal_id = deal_id
        self.reason = reason
