"""Tests for the deal timers: absolute, inactivity, deposit window and idle close."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from conftest import (
    BUYER,
    LTC_REFUND_ADDRESS,
    SELLER,
    eventually,
    to_delivery,
    to_deposit,
    to_payout_confirmation,
    type_text,
)

from channel_escrow.domain.deposits import to_crypto_units
from channel_escrow.domain.enums import DealAction, DealStatus, DepositStatus
from channel_escrow.domain.exceptions import ValidationError
from channel_escrow.services.orchestrator import refund_crypto_amount
from channel_escrow.services.timers import POLL


async def fire_absolute_timeout(orchestrator, deal) -> None:
    async with orchestrator.deals.lock(deal.deal_id):
        await orchestrator._on_absolute_timeout(deal)


class TestAbsoluteTimeout:
    @pytest.mark.asyncio
    async def test_expires_before_payment(
        self, make_orchestrator, settings, surface, audit_sink
    ) -> None:
        orchestrator = make_orchestrator(
            settings=settings.model_copy(update={"absolute_timeout_seconds": 0.05})
        )
        deal = await orchestrator.open_deal(BUYER, SELLER, "LTC")
        await orchestrator.handle_action(deal.deal_id, BUYER, DealAction.CLAIM_BUYER)

        await eventually(lambda: deal.deal_id not in orchestrator.deals)

        assert deal.status is DealStatus.TIMED_OUT
        assert not await surface.channel_exists(deal.deal_id)
        assert audit_sink.types(deal.deal_id)[-2:] == ["TIMEOUT", "DEAL_CLOSED"]

    @pytest.mark.asyncio
    async def test_funded_deal_opens_refund_window(
        self, orchestrator, surface, rail, audit_sink
    ) -> None:
        deal = await to_delivery(orchestrator, surface, rail)

        await fire_absolute_timeout(orchestrator, deal)
        assert deal.status is DealStatus.REFUND_FLOW
        assert "TIMEOUT" in audit_sink.types(deal.deal_id)

        await type_text(surface, deal.deal_id, BUYER, LTC_REFUND_ADDRESS)
        await eventually(lambda: deal.status is DealStatus.REFUNDED)

        expected = to_crypto_units(deal.buyer_pays_crypto * Decimal("39.50") / Decimal("40.50"))
        assert rail.withdrawals[0]["amount"] == expected
        assert rail.withdrawals[0]["destination"] == LTC_REFUND_ADDRESS

    @pytest.mark.asyncio
    async def test_confirming_deposit_is_not_refunded(self, orchestrator, surface, rail) -> None:
        deal = await to_deposit(orchestrator, surface)
        rail.simulate_deposit(
            "LTC", deal.buyer_pays_crypto, confirmations=0, status=DepositStatus.PENDING
        )
        await eventually(lambda: deal.deposit_detected)

        await fire_absolute_timeout(orchestrator, deal)

        assert deal.status is DealStatus.AWAITING_DEPOSIT
        assert deal.refund_on_settle
        assert orchestrator._timers[deal.deal_id].is_running(POLL)
        assert not await surface.post_message(deal.deal_id, BUYER, LTC_REFUND_ADDRESS)
        assert rail.withdrawals == []

    @pytest.mark.asyncio
    async def test_refund_window_opens_once_deposit_settles(
        self, orchestrator, surface, rail
    ) -> None:
        deal = await to_deposit(orchestrator, surface)
        record = rail.simulate_deposit(
            "LTC", deal.buyer_pays_crypto, confirmations=0, status=DepositStatus.PENDING
        )
        await eventually(lambda: deal.deposit_detected)
        await fire_absolute_timeout(orchestrator, deal)

        rail.confirm_deposit(record.tx_ref)
        await eventually(lambda: deal.status is DealStatus.REFUND_FLOW)
        assert deal.deposit_tx_ref == record.tx_ref

        await type_text(surface, deal.deal_id, BUYER, LTC_REFUND_ADDRESS)
        await eventually(lambda: deal.status is DealStatus.REFUNDED)
        assert len(rail.withdrawals) == 1
        assert rail.withdrawals[0]["amount"] == refund_crypto_amount(deal)

    @pytest.mark.asyncio
    async def test_settled_deposit_during_settle_delay(
        self, make_orchestrator, settings, surface, rail
    ) -> None:
        orchestrator = make_orchestrator(
            settings=settings.model_copy(update={"deposit_settle_delay_seconds": 30})
        )
        deal = await to_deposit(orchestrator, surface)
        record = rail.simulate_deposit("LTC", deal.buyer_pays_crypto)
        await eventually(lambda: deal.deposit_detected)

        await fire_absolute_timeout(orchestrator, deal)

        assert deal.status is DealStatus.REFUND_FLOW
        assert deal.deposit_tx_ref == record.tx_ref
        assert not orchestrator._timers[deal.deal_id].is_running(POLL)

    @pytest.mark.asyncio
    async def test_unfunded_deposit_stage_is_exempt(self, orchestrator, surface) -> None:
        deal = await to_deposit(orchestrator, surface)
        await fire_absolute_timeout(orchestrator, deal)
        assert deal.status is DealStatus.AWAITING_DEPOSIT

    @pytest.mark.asyncio
    async def test_payout_stage_is_exempt(self, orchestrator, surface, rail) -> None:
        deal = await to_delivery(orchestrator, surface, rail)
        await orchestrator.handle_action(deal.deal_id, SELLER, DealAction.CONFIRM_DELIVERY)
        await orchestrator.handle_action(deal.deal_id, BUYER, DealAction.CONFIRM_RECEIPT)

        await fire_absolute_timeout(orchestrator, deal)

        assert deal.status is DealStatus.AWAITING_PAYOUT_ADDRESS
        assert rail.withdrawals == []


class TestInactivityTimeout:
    @pytest.mark.asyncio
    async def test_idle_negotiation_expires(self, make_orchestrator, settings, surface) -> None:
        orchestrator = make_orchestrator(
            settings=settings.model_copy(update={"inactivity_timeout_seconds": 0.05})
        )
        deal = await orchestrator.open_deal(BUYER, SELLER, "LTC")

        await eventually(lambda: deal.deal_id not in orchestrator.deals)

        assert deal.status is DealStatus.TIMED_OUT
        assert not await surface.channel_exists(deal.deal_id)

    @pytest.mark.asyncio
    async def test_not_armed_once_payment_started(
        self, make_orchestrator, settings, surface
    ) -> None:
        orchestrator = make_orchestrator(
            settings=settings.model_copy(update={"inactivity_timeout_seconds": 0.3})
        )
        deal = await to_deposit(orchestrator, surface)

        await asyncio.sleep(0.5)

        assert deal.status is DealStatus.AWAITING_DEPOSIT
        assert deal.deal_id in orchestrator.deals


class TestDepositWindow:
    @pytest.mark.asyncio
    async def test_unfunded_deal_closes(
        self, make_orchestrator, settings, surface, rail, audit_sink
    ) -> None:
        orchestrator = make_orchestrator(
            settings=settings.model_copy(update={"deposit_window_seconds": 0.05})
        )
        deal = await to_deposit(orchestrator, surface)

        await eventually(lambda: deal.deal_id not in orchestrator.deals)

        assert deal.status is DealStatus.TIMED_OUT
        assert not await surface.channel_exists(deal.deal_id)
        assert audit_sink.types(deal.deal_id)[-2:] == ["TIMEOUT", "DEAL_CLOSED"]
        polls = len(rail.calls_of("poll_deposits"))
        await asyncio.sleep(0.05)
        assert len(rail.calls_of("poll_deposits")) == polls

    @pytest.mark.asyncio
    async def test_unsettled_deposit_escalates(
        self, make_orchestrator, settings, surface, rail
    ) -> None:
        orchestrator = make_orchestrator(
            settings=settings.model_copy(update={"deposit_window_seconds": 0.3})
        )
        deal = await to_deposit(orchestrator, surface)
        record = rail.simulate_deposit(
            "LTC", deal.buyer_pays_crypto, confirmations=0, status=DepositStatus.PENDING
        )

        await eventually(lambda: deal.status is DealStatus.ESCALATED)

        assert record.tx_ref in deal.escalation_reason
        assert deal.deal_id in orchestrator.deals
        assert rail.withdrawals == []


class TestIdleClose:
    @pytest.mark.asyncio
    async def test_completed_deal_closes_when_idle(
        self, make_orchestrator, settings, surface, rail, stats_sink
    ) -> None:
        orchestrator = make_orchestrator(
            settings=settings.model_copy(update={"closed_deal_idle_seconds": 0.05})
        )
        deal = await to_payout_confirmation(orchestrator, surface, rail)
        await orchestrator.handle_action(deal.deal_id, SELLER, DealAction.CONFIRM_PAYOUT)
        assert deal.status is DealStatus.COMPLETED

        await eventually(lambda: deal.deal_id not in orchestrator.deals)

        assert not await surface.channel_exists(deal.deal_id)
        assert len(stats_sink.summaries) == 1
        assert deal.deal_id not in orchestrator._timers

    @pytest.mark.asyncio
    async def test_keep_open_vote_does_not_pin_deal(
        self, make_orchestrator, settings, surface, rail
    ) -> None:
        orchestrator = make_orchestrator(
            settings=settings.model_copy(update={"closed_deal_idle_seconds": 0.2})
        )
        deal = await to_payout_confirmation(orchestrator, surface, rail)
        await orchestrator.handle_action(deal.deal_id, SELLER, DealAction.CONFIRM_PAYOUT)
        await orchestrator.handle_action(deal.deal_id, BUYER, DealAction.VOTE_CLOSE, "keep_open")
        await orchestrator.handle_action(deal.deal_id, SELLER, DealAction.VOTE_CLOSE, "keep_open")
        assert deal.deal_id in orchestrator.deals

        await eventually(lambda: deal.deal_id not in orchestrator.deals)

    @pytest.mark.asyncio
    async def test_refunded_deal_closes_when_idle(
        self, make_orchestrator, settings, surface, rail
    ) -> None:
        orchestrator = make_orchestrator(
            settings=settings.model_copy(update={"closed_deal_idle_seconds": 0.05})
        )
        deal = await to_delivery(orchestrator, surface, rail)
        await fire_absolute_timeout(orchestrator, deal)
        await type_text(surface, deal.deal_id, BUYER, LTC_REFUND_ADDRESS)
        await eventually(lambda: deal.status is DealStatus.REFUNDED)

        await eventually(lambda: deal.deal_id not in orchestrator.deals)


class TestRefundAmount:
    @pytest.mark.asyncio
    async def test_nothing_deposited(self, orchestrator) -> None:
        deal = await orchestrator.open_deal(BUYER, SELLER, "LTC")
        with pytest.raises(ValidationError) as exc_info:
            refund_crypto_amount(deal)
        assert exc_info.value.code == "NOTHING_TO_REFUND"
