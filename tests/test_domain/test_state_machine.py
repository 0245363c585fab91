"""Tests for the DealStateMachine domain guard.

These tests verify that:
    1. The happy path and the fee-waived path are allowed.
    2. Dispute, refund and escalation branches are allowed.
    3. Illegal transitions are blocked.
    4. The convenience function validate_transition works.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from channel_escrow.domain.state_machine import DealStateMachine, validate_transition


class TestHappyPath:
    """awaiting_role_selection -> completed with a fee ballot."""

    def test_full_lifecycle(self) -> None:
        sm = DealStateMachine()
        assert sm.status == "awaiting_role_selection"

        sm.roles_assigned()
        assert sm.status == "awaiting_amount"

        sm.amount_entered()
        assert sm.status == "awaiting_seller_approval"

        sm.fee_required()
        assert sm.status == "awaiting_fee_agreement"

        sm.fee_agreed()
        assert sm.status == "awaiting_deposit"

        sm.deposit_confirmed()
        assert sm.status == "awaiting_delivery"

        sm.delivery_confirmed()
        assert sm.status == "awaiting_receipt_confirmation"

        sm.receipt_confirmed()
        assert sm.status == "awaiting_payout_address"

        sm.payout_address_submitted()
        assert sm.status == "awaiting_payout_confirmation"

        sm.payout_sent()
        assert sm.status == "completed"

    def test_fee_waived_skips_ballot(self) -> None:
        sm = DealStateMachine("awaiting_seller_approval")
        sm.fee_waived()
        assert sm.status == "awaiting_deposit"

    def test_amount_rejected_returns_to_entry(self) -> None:
        sm = DealStateMachine("awaiting_seller_approval")
        sm.amount_rejected()
        assert sm.status == "awaiting_amount"

    def test_payout_address_cancelled(self) -> None:
        sm = DealStateMachine("awaiting_payout_confirmation")
        sm.payout_address_cancelled()
        assert sm.status == "awaiting_payout_address"


class TestDisputePath:
    def test_dispute_then_receipt(self) -> None:
        sm = DealStateMachine("awaiting_receipt_confirmation")
        sm.receipt_disputed()
        assert sm.status == "disputed"
        sm.receipt_confirmed()
        assert sm.status == "awaiting_payout_address"

    def test_dispute_then_refund(self) -> None:
        sm = DealStateMachine("disputed")
        sm.refund_approved()
        sm.refund_sent()
        assert sm.status == "refunded"

    def test_dispute_escalated_and_resolved(self) -> None:
        sm = DealStateMachine("disputed")
        sm.dispute_escalated()
        assert sm.status == "escalated"
        sm.operator_refunded()
        assert sm.status == "refunded"

    @pytest.mark.parametrize("start", ["awaiting_deposit", "awaiting_delivery"])
    def test_refund_window_from_funded_states(self, start: str) -> None:
        sm = DealStateMachine(start)
        sm.refund_window_opened()
        assert sm.status == "refund_flow"


class TestEscalation:
    def test_payout_failed(self) -> None:
        sm = DealStateMachine("awaiting_payout_confirmation")
        sm.payout_failed()
        assert sm.status == "escalated"
        sm.operator_completed()
        assert sm.status == "completed"

    def test_refund_failed(self) -> None:
        sm = DealStateMachine("refund_flow")
        sm.refund_failed()
        assert sm.status == "escalated"

    @pytest.mark.parametrize("start", ["awaiting_payout_address", "refund_flow"])
    def test_address_abandoned(self, start: str) -> None:
        sm = DealStateMachine(start)
        sm.address_abandoned()
        assert sm.status == "escalated"


class TestExpiry:
    @pytest.mark.parametrize(
        "start",
        [
            "awaiting_role_selection",
            "awaiting_amount",
            "awaiting_seller_approval",
            "awaiting_fee_agreement",
        ],
    )
    def test_pre_payment_states_expire(self, start: str) -> None:
        sm = DealStateMachine(start)
        sm.deal_expired()
        assert sm.status == "timed_out"

    @pytest.mark.parametrize("start", ["awaiting_deposit", "awaiting_delivery", "escalated"])
    def test_funded_states_never_expire(self, start: str) -> None:
        sm = DealStateMachine(start)
        with pytest.raises(TransitionNotAllowed):
            sm.deal_expired()

    def test_deposit_window_closes_unfunded_deal(self) -> None:
        sm = DealStateMachine("awaiting_deposit")
        sm.deposit_window_expired()
        assert sm.status == "timed_out"

    def test_stalled_deposit_escalates(self) -> None:
        sm = DealStateMachine("awaiting_deposit")
        sm.deposit_stalled()
        assert sm.status == "escalated"

    def test_deposit_window_only_applies_before_funding(self) -> None:
        sm = DealStateMachine("awaiting_delivery")
        with pytest.raises(TransitionNotAllowed):
            sm.deposit_window_expired()


class TestInvalidTransitions:
    def test_cannot_skip_to_completed(self) -> None:
        sm = DealStateMachine("awaiting_amount")
        with pytest.raises(TransitionNotAllowed):
            sm.payout_sent()

    def test_cannot_refund_after_receipt_confirmed(self) -> None:
        sm = DealStateMachine("awaiting_receipt_confirmation")
        with pytest.raises(TransitionNotAllowed):
            sm.refund_window_opened()

    @pytest.mark.parametrize("terminal", ["completed", "refunded", "timed_out"])
    def test_terminal_states_have_no_events(self, terminal: str) -> None:
        sm = DealStateMachine(terminal)
        assert sm.get_allowed_events() == []

    def test_unknown_status_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            DealStateMachine("shipped")


class TestValidateTransition:
    def test_returns_new_status(self) -> None:
        assert validate_transition("awaiting_deposit", "deposit_confirmed") == "awaiting_delivery"

    def test_unknown_event(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            validate_transition("awaiting_deposit", "teleport")

    def test_illegal_event(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition("completed", "payout_sent")

    def test_allowed_events_listing(self) -> None:
        sm = DealStateMachine("disputed")
        assert set(sm.get_allowed_events()) == {
            "receipt_confirmed",
            "refund_approved",
            "dispute_escalated",
        }
