"""Deal State Machine Guard.

Uses python-statemachine to enforce legal deal transitions at the domain level.
No matter what a participant presses or which timer fires, an illegal
transition (e.g., awaiting_amount -> completed) raises TransitionNotAllowed.

The state machine is instantiated per transition from the deal's current
status and validates the move before the DealRecord's status is updated.

Transition table:
    awaiting_role_selection        -> awaiting_amount                (roles_assigned)
    awaiting_amount                -> awaiting_seller_approval       (amount_entered)
    awaiting_seller_approval       -> awaiting_amount                (amount_rejected)
    awaiting_seller_approval       -> awaiting_fee_agreement         (fee_required)
    awaiting_seller_approval       -> awaiting_deposit               (fee_waived)
    awaiting_fee_agreement         -> awaiting_deposit               (fee_agreed)
    awaiting_deposit               -> awaiting_delivery              (deposit_confirmed)
    awaiting_delivery              -> awaiting_receipt_confirmation  (delivery_confirmed)
    awaiting_receipt_confirmation  -> awaiting_payout_address        (receipt_confirmed)
    disputed                       -> awaiting_payout_address        (receipt_confirmed)
    awaiting_receipt_confirmation  -> disputed                       (receipt_disputed)
    awaiting_payout_address        -> awaiting_payout_confirmation   (payout_address_submitted)
    awaiting_payout_confirmation   -> awaiting_payout_address        (payout_address_cancelled)
    awaiting_payout_confirmation   -> completed                      (payout_sent)
    awaiting_payout_confirmation   -> escalated                      (payout_failed)
    disputed                       -> refund_flow                    (refund_approved)
    disputed                       -> escalated                      (dispute_escalated)
    awaiting_deposit|delivery      -> refund_flow                    (refund_window_opened)
    refund_flow                    -> refunded                       (refund_sent)
    refund_flow                    -> escalated                      (refund_failed)
    awaiting_payout_address|refund_flow -> escalated                 (address_abandoned)
    any pre-payment state          -> timed_out                      (deal_expired)
    awaiting_deposit               -> timed_out                      (deposit_window_expired)
    awaiting_deposit               -> escalated                      (deposit_stalled)
    escalated                      -> completed                      (operator_completed)
    escalated                      -> refunded                       (operator_refunded)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class DealStateMachine(StateMachine):
    """State machine that guards deal lifecycle transitions.

    Usage:
        sm = DealStateMachine(current_status="awaiting_amount")
        sm.amount_entered()   # transitions to awaiting_seller_approval
        sm.status             # "awaiting_seller_approval"
    """

    # --- States ---
    awaiting_role_selection = State(
        "Awaiting role selection", value="awaiting_role_selection", initial=True
    )
    awaiting_amount = State("Awaiting amount", value="awaiting_amount")
    awaiting_seller_approval = State(
        "Awaiting seller approval", value="awaiting_seller_approval"
    )
    awaiting_fee_agreement = State(
        "Awaiting fee agreement", value="awaiting_fee_agreement"
    )
    awaiting_deposit = State("Awaiting deposit", value="awaiting_deposit")
    awaiting_delivery = State("Awaiting delivery", value="awaiting_delivery")
    awaiting_receipt_confirmation = State(
        "Awaiting receipt confirmation", value="awaiting_receipt_confirmation"
    )
    awaiting_payout_address = State(
        "Awaiting payout address", value="awaiting_payout_address"
    )
    awaiting_payout_confirmation = State(
        "Awaiting payout confirmation", value="awaiting_payout_confirmation"
    )
    disputed = State("Disputed", value="disputed")
    refund_flow = State("Refund flow", value="refund_flow")
    escalated = State("Escalated", value="escalated")
    completed = State("Completed", value="completed", final=True)
    refunded = State("Refunded", value="refunded", final=True)
    timed_out = State("Timed out", value="timed_out", final=True)

    # --- Events / Transitions ---

    # Negotiation
    roles_assigned = awaiting_role_selection.to(awaiting_amount)
    amount_entered = awaiting_amount.to(awaiting_seller_approval)
    amount_rejected = awaiting_seller_approval.to(awaiting_amount)
    fee_required = awaiting_seller_approval.to(awaiting_fee_agreement)
    fee_waived = awaiting_seller_approval.to(awaiting_deposit)
    fee_agreed = awaiting_fee_agreement.to(awaiting_deposit)

    # Funding and delivery
    deposit_confirmed = awaiting_deposit.to(awaiting_delivery)
    deposit_window_expired = awaiting_deposit.to(timed_out)
    deposit_stalled = awaiting_deposit.to(escalated)
    delivery_confirmed = awaiting_delivery.to(awaiting_receipt_confirmation)
    receipt_confirmed = awaiting_receipt_confirmation.to(
        awaiting_payout_address
    ) | disputed.to(awaiting_payout_address)
    receipt_disputed = awaiting_receipt_confirmation.to(disputed)

    # Payout
    payout_address_submitted = awaiting_payout_address.to(awaiting_payout_confirmation)
    payout_address_cancelled = awaiting_payout_confirmation.to(awaiting_payout_address)
    payout_sent = awaiting_payout_confirmation.to(completed)
    payout_failed = awaiting_payout_confirmation.to(escalated)

    # Disputes and refunds
    refund_approved = disputed.to(refund_flow)
    dispute_escalated = disputed.to(escalated)
    refund_window_opened = awaiting_deposit.to(refund_flow) | awaiting_delivery.to(
        refund_flow
    )
    refund_sent = refund_flow.to(refunded)
    refund_failed = refund_flow.to(escalated)
    address_abandoned = awaiting_payout_address.to(escalated) | refund_flow.to(
        escalated
    )

    # Expiry
    deal_expired = (
        awaiting_role_selection.to(timed_out)
        | awaiting_amount.to(timed_out)
        | awaiting_seller_approval.to(timed_out)
        | awaiting_fee_agreement.to(timed_out)
    )

    # Manual operator resolution
    operator_completed = escalated.to(completed)
    operator_refunded = escalated.to(refunded)

    def __init__(self, current_status: str = "awaiting_role_selection") -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current DealStatus value (e.g., "awaiting_deposit").
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches DealStatus)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return the identifiers of events that can fire from the current state."""
        return [getattr(event, "id", None) or event.name for event in self.allowed_events]


def validate_transition(current_status: str, event_name: str) -> str:
    """Validate a transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns
    the resulting status string.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = DealStateMachine(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status
