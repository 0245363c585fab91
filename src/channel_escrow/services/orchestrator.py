"""Deal Orchestrator: the engine that drives every deal through its lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Deal table (live records and per-deal locks)
    - Payment Rail (quotes, deposit address, deposit polling, withdrawals)
    - Messaging Surface (prompts, free-text collection, channel teardown)
    - Audit log and stats sink

Participant button presses arrive through ``handle_action`` and are routed
through one table keyed by ``(status, action)``. Free-text input (amount,
payout and refund addresses) is read by collector tasks that loop on the
Messaging Surface's time-bounded read. Timers, the deposit poll loop, the
deposit window, the idle close of finished deals and the delayed teardown are
per-deal tasks owned by ``DealTimers``. Each inbound deposit is claimed by
exactly one deal through the deal table.

Every outbound transfer is guarded three times: a one-shot ``FinalizeGuard``
on the record claimed before the first await, a process-external
``PayoutGuard`` key, and the write-once transaction reference fields.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from statemachine.exceptions import TransitionNotAllowed

from channel_escrow.config import Settings, get_settings
from channel_escrow.domain.address_validator import validate_address
from channel_escrow.domain.coins import get_coin
from channel_escrow.domain.deal import DealRecord
from channel_escrow.domain.deposits import (
    is_settled,
    match_deposit,
    salt_amount,
    to_crypto_units,
    within_tolerance,
)
from channel_escrow.domain.enums import (
    REFUND_ELIGIBLE_STATUSES,
    AuditEventType,
    CloseChoice,
    DealAction,
    DealStatus,
    FeePayer,
    PrivacyChoice,
    Role,
)
from channel_escrow.domain.exceptions import (
    DealNotFoundError,
    EscrowError,
    InvalidStateTransitionError,
    NotYourTurnError,
    PayoutEscalatedError,
    RailError,
    ValidationError,
)
from channel_escrow.domain.fees import compute_fee, parse_amount, split_settlement, to_cents
from channel_escrow.domain.protocols import CompletedDealSummary
from channel_escrow.domain.state_machine import DealStateMachine
from channel_escrow.infrastructure.redis_client import InMemoryPayoutGuard
from channel_escrow.logging_config import bound_deal, get_logger
from channel_escrow.services import messages
from channel_escrow.services.audit_log import AuditLog
from channel_escrow.services.deal_table import DealTable
from channel_escrow.services.timers import (
    ABSOLUTE,
    COLLECTOR,
    DEPOSIT_WINDOW,
    IDLE_CLOSE,
    INACTIVITY,
    POLL,
    TEARDOWN,
    DealTimers,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from channel_escrow.domain.protocols import (
        DepositRecord,
        MessagingSurface,
        PaymentRail,
        PayoutGuard,
        Prompt,
        StatsSink,
    )

    Handler = Callable[[DealRecord, str, str | None], Awaitable[None]]
    InputHandler = Callable[[DealRecord, str], Awaitable[bool]]

logger = get_logger(__name__)

# Route role for actions any of the two participants may take.
PARTICIPANT = "participant"


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one participant action."""

    ok: bool
    status: DealStatus
    code: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class _Route:
    role: Role | str
    handler: Handler


class DealOrchestrator:
    """Runs every open deal: actions, collectors, timers, payouts."""

    def __init__(
        self,
        rail: PaymentRail,
        messaging: MessagingSurface,
        *,
        settings: Settings | None = None,
        deals: DealTable | None = None,
        audit: AuditLog | None = None,
        stats: StatsSink | None = None,
        payout_guard: PayoutGuard | None = None,
    ) -> None:
        self._rail = rail
        self._messaging = messaging
        self._settings = settings or get_settings()
        self._deals = deals or DealTable()
        self._audit = audit or AuditLog()
        self._stats = stats
        self._payout_guard = payout_guard or InMemoryPayoutGuard()
        self._timers: dict[str, DealTimers] = {}
        self._routes = self._build_routes()

    def _build_routes(self) -> dict[tuple[DealStatus, DealAction], _Route]:
        s, a = DealStatus, DealAction
        return {
            (s.AWAITING_ROLE_SELECTION, a.CLAIM_BUYER): _Route(PARTICIPANT, self._on_claim_buyer),
            (s.AWAITING_ROLE_SELECTION, a.CLAIM_SELLER): _Route(
                PARTICIPANT, self._on_claim_seller
            ),
            (s.AWAITING_ROLE_SELECTION, a.RESET_ROLES): _Route(PARTICIPANT, self._on_reset_roles),
            (s.AWAITING_SELLER_APPROVAL, a.APPROVE_AMOUNT): _Route(
                Role.SELLER, self._on_approve_amount
            ),
            (s.AWAITING_SELLER_APPROVAL, a.REJECT_AMOUNT): _Route(
                Role.SELLER, self._on_reject_amount
            ),
            (s.AWAITING_FEE_AGREEMENT, a.VOTE_FEE_PAYER): _Route(PARTICIPANT, self._on_fee_vote),
            (s.AWAITING_DELIVERY, a.CONFIRM_DELIVERY): _Route(
                Role.SELLER, self._on_confirm_delivery
            ),
            (s.AWAITING_RECEIPT_CONFIRMATION, a.CONFIRM_RECEIPT): _Route(
                Role.BUYER, self._on_confirm_receipt
            ),
            (s.AWAITING_RECEIPT_CONFIRMATION, a.REPORT_NOT_RECEIVED): _Route(
                Role.BUYER, self._on_report_not_received
            ),
            (s.DISPUTED, a.CONFIRM_RECEIPT): _Route(Role.BUYER, self._on_confirm_receipt),
            (s.DISPUTED, a.APPROVE_REFUND): _Route(Role.SELLER, self._on_approve_refund),
            (s.DISPUTED, a.ESCALATE): _Route(PARTICIPANT, self._on_escalate),
            (s.AWAITING_PAYOUT_CONFIRMATION, a.CONFIRM_PAYOUT): _Route(
                Role.SELLER, self._on_confirm_payout
            ),
            (s.AWAITING_PAYOUT_CONFIRMATION, a.CANCEL_PAYOUT): _Route(
                Role.SELLER, self._on_cancel_payout
            ),
            (s.COMPLETED, a.VOTE_PRIVACY): _Route(PARTICIPANT, self._on_privacy_vote),
            (s.COMPLETED, a.VOTE_CLOSE): _Route(PARTICIPANT, self._on_close_vote),
            (s.REFUNDED, a.VOTE_CLOSE): _Route(PARTICIPANT, self._on_close_vote),
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def deals(self) -> DealTable:
        return self._deals

    async def open_deal(self, initiator: str, counterparty: str, asset: str) -> DealRecord:
        """Create the negotiation channel and its deal record.

        Raises:
            ValidationError: If both parties are the same actor.
            UnsupportedAssetError: If ``asset`` is not in the coin registry.
        """
        if initiator == counterparty:
            raise ValidationError("You cannot open a deal with yourself.", code="SAME_PARTY")
        coin = get_coin(asset)

        deal_id = await self._messaging.create_channel(initiator, counterparty)
        deal = self._deals.add(DealRecord(deal_id, initiator, counterparty, coin.symbol))
        timers = DealTimers(deal_id)
        self._timers[deal_id] = timers

        with bound_deal(deal_id):
            timers.start(ABSOLUTE, self._absolute_timer(deal_id))
            self._arm_inactivity(deal)
            await self._audit.record(AuditEventType.DEAL_OPENED, deal)
            await self._notify(
                deal,
                messages.welcome(coin, initiator, counterparty),
                prompt=messages.ROLE_PROMPT,
                mentions=deal.participants,
            )
            logger.info(
                "deal.opened",
                asset=coin.symbol,
                initiator=initiator,
                counterparty=counterparty,
            )
        return deal

    async def handle_action(
        self,
        deal_id: str,
        actor_id: str,
        action: DealAction | str,
        value: str | None = None,
    ) -> ActionResult:
        """Validate and apply one participant action.

        Actor-facing failures never propagate: they are posted to the channel
        addressed to the actor and returned as a failed ``ActionResult``.

        Raises:
            DealNotFoundError: If no open deal has this id.
        """
        deal = self._deals.get(deal_id)
        with bound_deal(deal_id, actor_id=actor_id):
            async with self._deals.lock(deal_id):
                if deal_id not in self._deals:
                    raise DealNotFoundError(deal_id)
                try:
                    await self._dispatch(deal, actor_id, action, value)
                except PayoutEscalatedError as exc:
                    return ActionResult(False, deal.status, exc.code, exc.message)
                except EscrowError as exc:
                    logger.info("deal.action_rejected", action=str(action), code=exc.code)
                    await self._notify(
                        deal,
                        messages.action_failed(actor_id, exc.message, deal.payment_started),
                        mentions=(actor_id,),
                    )
                    return ActionResult(False, deal.status, exc.code, exc.message)
                except Exception:
                    logger.exception("deal.action_failed", action=str(action))
                    await self._notify(deal, messages.internal_error(deal.payment_started))
                    return ActionResult(
                        False, deal.status, "INTERNAL_ERROR", "Unexpected error handling action"
                    )
                self._note_activity(deal)
                return ActionResult(True, deal.status)

    async def resolve_escalation(
        self,
        deal_id: str,
        outcome: DealStatus,
        tx_ref: str | None = None,
        note: str | None = None,
    ) -> DealRecord:
        """Operator closes out an escalated deal as completed or refunded.

        Raises:
            DealNotFoundError: If no open deal has this id.
            InvalidStateTransitionError: If the deal is not escalated or the
                outcome is neither completed nor refunded.
        """
        deal = self._deals.get(deal_id)
        with bound_deal(deal_id):
            async with self._deals.lock(deal_id):
                if outcome is DealStatus.COMPLETED:
                    self._fire(deal, "operator_completed")
                    if tx_ref and deal.payout_tx_ref is None:
                        deal.payout_tx_ref = tx_ref
                    deal.completed_at = datetime.now(UTC)
                    await self._audit.record(
                        AuditEventType.DEAL_COMPLETED,
                        deal,
                        amount=deal.seller_receives_crypto,
                        tx_ref=deal.payout_tx_ref,
                        resolution="operator",
                        note=note,
                    )
                    await self._notify(deal, messages.operator_completed())
                    await self._notify(
                        deal,
                        messages.ask_privacy(),
                        prompt=messages.PRIVACY_PROMPT,
                        mentions=deal.participants,
                    )
                elif outcome is DealStatus.REFUNDED:
                    self._fire(deal, "operator_refunded")
                    if tx_ref and deal.refund_tx_ref is None:
                        deal.refund_tx_ref = tx_ref
                    await self._audit.record(
                        AuditEventType.REFUND,
                        deal,
                        tx_ref=deal.refund_tx_ref,
                        resolution="operator",
                        note=note,
                    )
                    await self._notify(deal, messages.operator_refunded())
                    await self._notify(
                        deal, messages.ask_close(), prompt=messages.CLOSE_PROMPT
                    )
                else:
                    raise InvalidStateTransitionError(deal.status, f"resolve:{outcome}")
                self._arm_idle_close(deal)
                logger.info("deal.escalation_resolved", outcome=outcome.value, note=note)
        return deal

    def describe(self, deal_id: str) -> dict[str, Any]:
        """Snapshot of a deal plus the actions and events available now."""
        deal = self._deals.get(deal_id)
        sm = DealStateMachine(current_status=deal.status.value)
        return {
            **deal.snapshot(),
            "allowed_actions": sorted(
                action.value for status, action in self._routes if status is deal.status
            ),
            "allowed_events": sm.get_allowed_events(),
        }

    async def shutdown(self) -> None:
        """Cancel every deal's background tasks (process shutdown)."""
        for timers in self._timers.values():
            timers.cancel_all()
        self._timers.clear()
        logger.info("orchestrator.shutdown", open_deals=len(self._deals))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        deal: DealRecord,
        actor_id: str,
        action: DealAction | str,
        value: str | None,
    ) -> None:
        try:
            action = DealAction(action)
        except ValueError as err:
            raise ValidationError(f"Unknown action '{action}'.", code="UNKNOWN_ACTION") from err
        if not deal.is_participant(actor_id):
            raise ValidationError(
                "Only the two deal participants can act in this channel.",
                code="NOT_A_PARTICIPANT",
            )
        route = self._routes.get((deal.status, action))
        if route is None:
            raise ValidationError(
                f"'{action.value}' is not available while the deal is "
                f"{deal.status.value.replace('_', ' ')}.",
                code="ACTION_NOT_AVAILABLE",
            )
        if route.role != PARTICIPANT and deal.role_of(actor_id) is not route.role:
            raise NotYourTurnError(actor_id, str(route.role))
        logger.debug("deal.action", action=action.value, status=deal.status.value)
        await route.handler(deal, actor_id, value)

    def _fire(self, deal: DealRecord, event_name: str) -> None:
        """Validate and fire a state machine transition.

        Raises InvalidStateTransitionError if the transition is illegal.
        """
        sm = DealStateMachine(current_status=deal.status.value)
        event_method = getattr(sm, event_name, None)
        if event_method is None:
            raise InvalidStateTransitionError(deal.status, event_name)
        try:
            event_method()
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(deal.status, event_name) from err
        previous = deal.status
        deal.status = DealStatus(sm.status)
        logger.info(
            "deal.transition",
            from_status=previous.value,
            to_status=deal.status.value,
            trigger=event_name,
        )

    # ------------------------------------------------------------------
    # Role selection
    # ------------------------------------------------------------------

    async def _on_claim_buyer(self, deal: DealRecord, actor_id: str, value: str | None) -> None:
        await self._claim_role(deal, actor_id, Role.BUYER)

    async def _on_claim_seller(self, deal: DealRecord, actor_id: str, value: str | None) -> None:
        await self._claim_role(deal, actor_id, Role.SELLER)

    async def _claim_role(self, deal: DealRecord, actor_id: str, role: Role) -> None:
        deal.claim_role(actor_id, role)
        await self._notify(deal, messages.role_claimed(actor_id, role.value))
        if not deal.roles_complete:
            return

        self._fire(deal, "roles_assigned")
        voters = (deal.buyer, deal.seller)
        deal.fee_ballot.bind(voters)
        deal.privacy_ballot.bind(voters)
        deal.close_ballot.bind(voters)
        logger.info("deal.roles_assigned", buyer=deal.buyer, seller=deal.seller)
        await self._prompt_amount(deal)

    async def _on_reset_roles(self, deal: DealRecord, actor_id: str, value: str | None) -> None:
        deal.reset_roles()
        await self._notify(deal, messages.roles_reset(), prompt=messages.ROLE_PROMPT)

    # ------------------------------------------------------------------
    # Amount entry and seller approval
    # ------------------------------------------------------------------

    async def _prompt_amount(self, deal: DealRecord) -> None:
        coin = get_coin(deal.asset)
        await self._notify(deal, messages.ask_amount(deal.buyer, coin), mentions=(deal.buyer,))
        self._start_collector(deal, DealStatus.AWAITING_AMOUNT, deal.buyer, self._accept_amount)

    async def _accept_amount(self, deal: DealRecord, text: str) -> bool:
        coin = get_coin(deal.asset)
        try:
            amount = parse_amount(text)
        except ValidationError as exc:
            await self._notify(
                deal, messages.action_failed(deal.buyer, exc.message, False), mentions=(deal.buyer,)
            )
            return await self._input_rejected(deal, "amount")
        if amount < coin.min_deal_usd:
            await self._notify(deal, messages.amount_below_minimum(coin), mentions=(deal.buyer,))
            return await self._input_rejected(deal, "amount")

        deal.deal_amount_usd = amount
        self._fire(deal, "amount_entered")
        logger.info("deal.amount_entered", amount=str(amount))
        await self._notify(
            deal,
            messages.ask_approval(deal.seller, amount),
            prompt=messages.APPROVAL_PROMPT,
            mentions=(deal.seller,),
        )
        return True

    async def _on_reject_amount(self, deal: DealRecord, actor_id: str, value: str | None) -> None:
        if deal.fee_usd is not None:
            raise ValidationError(
                "This amount is already approved. Press Approve to retry the deposit setup.",
                code="AMOUNT_LOCKED",
            )
        deal.clear_amount()
        self._fire(deal, "amount_rejected")
        await self._notify(deal, messages.amount_rejected(deal.buyer), mentions=(deal.buyer,))
        await self._prompt_amount(deal)

    async def _on_approve_amount(self, deal: DealRecord, actor_id: str, value: str | None) -> None:
        coin = get_coin(deal.asset)
        if deal.fee_usd is None:
            deal.fee_usd = compute_fee(deal.deal_amount_usd, coin.is_stablecoin)
            logger.info("deal.fee_computed", fee=str(deal.fee_usd))

        if deal.fee_usd == 0:
            deal.buyer_pays_usd = deal.deal_amount_usd
            deal.seller_receives_usd = deal.deal_amount_usd
            await self._notify(deal, messages.fee_waived(deal.deal_amount_usd))
            await self._generate_deposit(deal, "fee_waived")
            return

        self._fire(deal, "fee_required")
        await self._notify(
            deal,
            messages.fee_ballot(deal.fee_usd, deal.deal_amount_usd),
            prompt=messages.FEE_PROMPT,
            mentions=deal.participants,
        )

    # ------------------------------------------------------------------
    # Fee-payer ballot
    # ------------------------------------------------------------------

    async def _on_fee_vote(self, deal: DealRecord, actor_id: str, value: str | None) -> None:
        choice = _parse_choice(FeePayer, value)
        ballot = deal.fee_ballot
        ballot.cast(actor_id, choice)
        await self._notify(deal, messages.vote_recorded(actor_id, ballot.name))
        if not ballot.try_finalize():
            return

        agreed = ballot.unanimous
        if agreed is None:
            cap = self._settings.max_fee_ballot_rounds
            if cap is not None and ballot.rounds >= cap:
                logger.warning("deal.fee_ballot_exhausted", rounds=ballot.rounds)
                await self._expire(deal, messages.fee_votes_disagree(ballot.rounds), "fee_ballot")
                return
            ballot.reset()
            logger.info("deal.fee_votes_disagree", round=ballot.rounds)
            await self._notify(
                deal,
                messages.fee_votes_disagree(ballot.rounds),
                prompt=messages.FEE_PROMPT,
                mentions=deal.participants,
            )
            return

        split = split_settlement(deal.deal_amount_usd, deal.fee_usd, agreed)
        deal.fee_payer = agreed
        deal.buyer_pays_usd = split.buyer_pays_usd
        deal.seller_receives_usd = split.seller_receives_usd
        logger.info(
            "deal.fee_agreed",
            fee_payer=agreed.value,
            buyer_pays=str(split.buyer_pays_usd),
            seller_receives=str(split.seller_receives_usd),
        )
        await self._generate_deposit(deal, "fee_agreed")

    # ------------------------------------------------------------------
    # Deposit generation and payment monitoring
    # ------------------------------------------------------------------

    async def _generate_deposit(self, deal: DealRecord, event_name: str) -> None:
        """Quote both sides, issue the deposit address and start polling.

        A rail failure rolls the deposit guard back (and re-opens the fee
        ballot) so the step can be retried; nothing has been paid yet.
        """
        if not deal.deposit_guard.claim():
            logger.info("deal.deposit_generation_skipped", reason="already_claimed")
            return

        try:
            buyer_quote = await self._rail.quote(deal.asset, deal.buyer_pays_usd)
            seller_quote = await self._rail.quote(deal.asset, deal.seller_receives_usd)
            address = await self._rail.issue_deposit_address(deal.asset)
        except RailError as exc:
            deal.deposit_guard.release()
            logger.warning("deal.deposit_generation_failed", error=exc.message, op=exc.operation)
            await self._audit.record(
                AuditEventType.ERROR, deal, error=exc.message, stage="deposit_generation"
            )
            if event_name == "fee_agreed":
                deal.fee_ballot.reset()
                await self._notify(
                    deal,
                    messages.deposit_generation_failed(),
                    prompt=messages.FEE_PROMPT,
                    mentions=deal.participants,
                )
            else:
                await self._notify(
                    deal,
                    messages.deposit_generation_failed_zero_fee(),
                    prompt=messages.APPROVAL_PROMPT,
                    mentions=(deal.seller,),
                )
            return

        deal.buyer_pays_crypto = salt_amount(buyer_quote.crypto_amount)
        deal.seller_receives_crypto = to_crypto_units(seller_quote.crypto_amount)
        deal.buyer_rate = buyer_quote.rate
        deal.seller_rate = seller_quote.rate
        deal.deposit_address = address.address
        deal.deposit_network = address.network
        deal.deposit_quote_timestamp = buyer_quote.quoted_at

        self._fire(deal, event_name)
        deal.payment_started_at = datetime.now(UTC)
        self._timers_for(deal).cancel(INACTIVITY)

        await self._audit.record(
            AuditEventType.DEPOSIT_ADDRESS_ISSUED,
            deal,
            amount=deal.buyer_pays_crypto,
            address=address.address,
            network=address.network,
            buyer_pays_usd=str(deal.buyer_pays_usd),
        )
        await self._notify(
            deal,
            messages.deposit_instructions(
                deal.buyer,
                get_coin(deal.asset),
                address.address,
                address.network,
                deal.buyer_pays_crypto,
                deal.buyer_pays_usd,
            ),
            mentions=(deal.buyer,),
        )
        logger.info(
            "deal.deposit_address_issued",
            expected=str(deal.buyer_pays_crypto),
            seller_amount=str(deal.seller_receives_crypto),
        )
        timers = self._timers_for(deal)
        timers.start(POLL, self._poll_payment(deal.deal_id))
        timers.start(DEPOSIT_WINDOW, self._deposit_window_timer(deal.deal_id))

    async def _poll_payment(self, deal_id: str) -> None:
        interval = self._settings.payment_poll_interval_seconds
        while True:
            deal = self._deals.find(deal_id)
            if deal is None or deal.status is not DealStatus.AWAITING_DEPOSIT:
                return
            if not await self._messaging.channel_exists(deal_id):
                logger.info("deal.poll_stopped", reason="channel_gone")
                return
            try:
                deposits = await self._rail.poll_deposits(
                    deal.asset, deal.deposit_quote_timestamp
                )
            except RailError as exc:
                logger.warning("deal.poll_failed", error=exc.message)
            else:
                if deal.deposit is not None:
                    claimed = deal.deposit.tx_ref
                    found = next((d for d in deposits if d.tx_ref == claimed), None)
                else:
                    found = match_deposit(
                        deposits,
                        deal.buyer_pays_crypto,
                        deal.deposit_quote_timestamp,
                        self._settings.deposit_tolerance,
                        exclude=self._deals.deposits_claimed_by_others(deal_id),
                    )
                if found is not None and await self._observe_deposit(deal_id, found):
                    return
            await asyncio.sleep(interval)

    async def _observe_deposit(self, deal_id: str, deposit: DepositRecord) -> bool:
        """Handle a matching deposit; return True once polling should stop."""
        async with self._locked(deal_id) as deal:
            if deal is None or deal.status is not DealStatus.AWAITING_DEPOSIT:
                return True
            if deal.deposit is None and not self._claim_deposit(deal, deposit):
                return False
            deal.deposit = deposit
            deal.deposit_confirmations = deposit.confirmations
            if not deal.deposit_detected:
                deal.deposit_detected = True
                await self._audit.record(
                    AuditEventType.DEPOSIT_DETECTED,
                    deal,
                    amount=deposit.amount,
                    tx_ref=deposit.tx_ref,
                    confirmations=deposit.confirmations,
                )
                await self._notify(deal, messages.deposit_detected(deposit.amount, deal.asset))
                logger.info("deal.deposit_detected", amount=str(deposit.amount))
            if not self._deposit_settled(deal):
                return False

        await asyncio.sleep(self._settings.deposit_settle_delay_seconds)

        async with self._locked(deal_id) as deal:
            if deal is None or deal.status is not DealStatus.AWAITING_DEPOSIT:
                return True
            deal.deposit_tx_ref = deposit.tx_ref
            if deal.refund_on_settle:
                await self._open_refund_window(deal)
                return True
            self._fire(deal, "deposit_confirmed")
            await self._audit.record(
                AuditEventType.DEPOSIT_CONFIRMED,
                deal,
                amount=deposit.amount,
                tx_ref=deposit.tx_ref,
                confirmations=deposit.confirmations,
            )
            await self._notify(
                deal,
                messages.deposit_confirmed(deal.seller),
                prompt=messages.DELIVERY_PROMPT,
                mentions=(deal.seller,),
            )
            logger.info("deal.deposit_confirmed", tx_ref=deposit.tx_ref)
        return True

    def _claim_deposit(self, deal: DealRecord, deposit: DepositRecord) -> bool:
        """Claim ``deposit`` for ``deal`` unless another deal has a better claim.

        The deposit goes to the waiting deal whose expected amount is closest
        (the earliest opened on a tie). A deposit claimed once is never
        matched to another deal.
        """
        closest = self._closest_waiting_deal(deposit)
        if closest is not None and closest is not deal:
            logger.info(
                "deal.deposit_deferred", tx_ref=deposit.tx_ref, closer_deal=closest.deal_id
            )
            return False
        if not self._deals.claim_deposit(deposit.tx_ref, deal.deal_id):
            logger.warning(
                "deal.deposit_already_claimed",
                tx_ref=deposit.tx_ref,
                owner=self._deals.deposit_owner(deposit.tx_ref),
            )
            return False
        return True

    def _closest_waiting_deal(self, deposit: DepositRecord) -> DealRecord | None:
        tolerance = self._settings.deposit_tolerance
        waiting = [
            d
            for d in self._deals.all()
            if d.status is DealStatus.AWAITING_DEPOSIT
            and d.deposit is None
            and d.asset == deposit.asset
            and d.buyer_pays_crypto is not None
            and d.deposit_quote_timestamp is not None
            and deposit.inserted_at >= d.deposit_quote_timestamp
            and within_tolerance(deposit.amount, d.buyer_pays_crypto, tolerance)
        ]
        if not waiting:
            return None
        return min(
            waiting, key=lambda d: (abs(deposit.amount - d.buyer_pays_crypto), d.created_at)
        )

    def _deposit_settled(self, deal: DealRecord) -> bool:
        return deal.deposit is not None and is_settled(
            deal.deposit, get_coin(deal.asset).required_confirmations
        )

    # ------------------------------------------------------------------
    # Delivery, receipt and dispute
    # ------------------------------------------------------------------

    async def _on_confirm_delivery(
        self, deal: DealRecord, actor_id: str, value: str | None
    ) -> None:
        self._fire(deal, "delivery_confirmed")
        await self._notify(
            deal,
            messages.ask_receipt(deal.buyer),
            prompt=messages.RECEIPT_PROMPT,
            mentions=(deal.buyer,),
        )

    async def _on_confirm_receipt(
        self, deal: DealRecord, actor_id: str, value: str | None
    ) -> None:
        self._fire(deal, "receipt_confirmed")
        await self._prompt_payout_address(deal)

    async def _on_report_not_received(
        self, deal: DealRecord, actor_id: str, value: str | None
    ) -> None:
        self._fire(deal, "receipt_disputed")
        await self._audit.record(AuditEventType.DISPUTE_RAISED, deal, raised_by=actor_id)
        await self._notify(
            deal,
            messages.dispute_opened(deal.seller),
            prompt=messages.DISPUTE_PROMPT,
            mentions=deal.participants,
        )
        logger.info("deal.dispute_raised")

    async def _on_approve_refund(
        self, deal: DealRecord, actor_id: str, value: str | None
    ) -> None:
        self._fire(deal, "refund_approved")
        await self._prompt_refund_address(deal)

    async def _on_escalate(self, deal: DealRecord, actor_id: str, value: str | None) -> None:
        await self._escalate(
            deal, "dispute_escalated", f"dispute escalated by {actor_id}", payout_failed=False
        )

    # ------------------------------------------------------------------
    # Payout
    # ------------------------------------------------------------------

    async def _prompt_payout_address(self, deal: DealRecord) -> None:
        deal.address_attempts = 0
        await self._notify(
            deal,
            messages.ask_payout_address(deal.seller, deal.asset),
            mentions=(deal.seller,),
        )
        self._start_collector(
            deal, DealStatus.AWAITING_PAYOUT_ADDRESS, deal.seller, self._accept_payout_address
        )

    async def _accept_payout_address(self, deal: DealRecord, text: str) -> bool:
        check = validate_address(text, deal.asset)
        if not check.valid:
            await self._notify(
                deal, messages.invalid_address(check.reason, deal.asset), mentions=(deal.seller,)
            )
            return await self._input_rejected(deal, "payout_address")

        deal.seller_payout_address = text
        self._fire(deal, "payout_address_submitted")
        await self._notify(
            deal,
            messages.confirm_payout_address(
                deal.seller, text, deal.seller_receives_crypto, deal.asset
            ),
            prompt=messages.PAYOUT_CONFIRM_PROMPT,
            mentions=(deal.seller,),
        )
        return True

    async def _on_cancel_payout(self, deal: DealRecord, actor_id: str, value: str | None) -> None:
        if deal.payout_guard.claimed:
            raise ValidationError("The payout is already being sent.", code="PAYOUT_IN_PROGRESS")
        deal.seller_payout_address = None
        self._fire(deal, "payout_address_cancelled")
        await self._prompt_payout_address(deal)

    async def _on_confirm_payout(self, deal: DealRecord, actor_id: str, value: str | None) -> None:
        """Send the seller's payout. Never invoked twice for one deal."""
        if deal.payout_tx_ref is not None or not deal.payout_guard.claim():
            raise ValidationError("The payout has already been sent.", code="PAYOUT_IN_PROGRESS")

        self._timers_for(deal).cancel_all()

        if not await self._payout_guard.claim(deal.deal_id, "payout"):
            await self._escalate(deal, "payout_failed", "payout key already claimed")
            raise PayoutEscalatedError(deal.deal_id, "payout key already claimed")

        coin = get_coin(deal.asset)
        try:
            receipt = await self._rail.withdraw(
                deal.asset,
                deal.seller_receives_crypto,
                deal.seller_payout_address,
                coin.settlement_network,
            )
        except RailError as exc:
            logger.error(
                "deal.payout_failed",
                error=exc.message,
                amount=str(deal.seller_receives_crypto),
                destination=deal.seller_payout_address,
            )
            await self._audit.record(
                AuditEventType.WITHDRAWAL_FAILED,
                deal,
                amount=deal.seller_receives_crypto,
                error=exc.message,
                destination=deal.seller_payout_address,
            )
            await self._escalate(deal, "payout_failed", exc.message)
            raise PayoutEscalatedError(deal.deal_id, exc.message) from exc

        deal.payout_tx_ref = receipt.tx_ref
        deal.completed_at = datetime.now(UTC)
        self._fire(deal, "payout_sent")
        await self._audit.record(
            AuditEventType.WITHDRAWAL,
            deal,
            amount=deal.seller_receives_crypto,
            tx_ref=receipt.tx_ref,
            destination=deal.seller_payout_address,
        )
        await self._audit.record(
            AuditEventType.DEAL_COMPLETED,
            deal,
            amount=deal.deal_amount_usd,
            tx_ref=receipt.tx_ref,
            fee_usd=str(deal.fee_usd),
        )
        await self._notify(
            deal,
            messages.payout_sent(deal.seller_receives_crypto, deal.asset, receipt.tx_ref),
            mentions=deal.participants,
        )
        logger.info("deal.completed", tx_ref=receipt.tx_ref)
        await self._notify(
            deal,
            messages.ask_privacy(),
            prompt=messages.PRIVACY_PROMPT,
            mentions=deal.participants,
        )

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def _prompt_refund_address(self, deal: DealRecord) -> None:
        deal.address_attempts = 0
        await self._notify(
            deal,
            messages.ask_refund_address(deal.buyer, deal.asset),
            mentions=(deal.buyer,),
        )
        self._start_collector(
            deal, DealStatus.REFUND_FLOW, deal.buyer, self._accept_refund_address
        )

    async def _accept_refund_address(self, deal: DealRecord, text: str) -> bool:
        check = validate_address(text, deal.asset)
        if not check.valid:
            await self._notify(
                deal, messages.invalid_address(check.reason, deal.asset), mentions=(deal.buyer,)
            )
            return await self._input_rejected(deal, "refund_address")
        deal.buyer_refund_address = text
        await self._send_refund(deal)
        return True

    async def _send_refund(self, deal: DealRecord) -> None:
        """Return the buyer's deposit minus the fee. At most once per deal."""
        amount = refund_crypto_amount(deal)
        if deal.refund_tx_ref is not None or not deal.refund_guard.claim():
            logger.warning("deal.refund_skipped", reason="already_claimed")
            return

        self._timers_for(deal).cancel_all()

        if not await self._payout_guard.claim(deal.deal_id, "refund"):
            await self._escalate(deal, "refund_failed", "refund key already claimed")
            return

        coin = get_coin(deal.asset)
        try:
            receipt = await self._rail.withdraw(
                deal.asset, amount, deal.buyer_refund_address, coin.settlement_network
            )
        except RailError as exc:
            logger.error("deal.refund_failed", error=exc.message, amount=str(amount))
            await self._audit.record(
                AuditEventType.REFUND_FAILED,
                deal,
                amount=amount,
                error=exc.message,
                destination=deal.buyer_refund_address,
            )
            await self._escalate(deal, "refund_failed", exc.message)
            return

        deal.refund_tx_ref = receipt.tx_ref
        self._fire(deal, "refund_sent")
        await self._audit.record(
            AuditEventType.REFUND,
            deal,
            amount=amount,
            tx_ref=receipt.tx_ref,
            destination=deal.buyer_refund_address,
        )
        await self._notify(
            deal,
            messages.refund_sent(amount, deal.asset, receipt.tx_ref),
            mentions=(deal.buyer,),
        )
        logger.info("deal.refunded", tx_ref=receipt.tx_ref, amount=str(amount))
        await self._notify(deal, messages.ask_close(), prompt=messages.CLOSE_PROMPT)

    # ------------------------------------------------------------------
    # Escalation and retry caps
    # ------------------------------------------------------------------

    async def _escalate(
        self,
        deal: DealRecord,
        event_name: str,
        reason: str,
        *,
        payout_failed: bool = True,
        text: str | None = None,
    ) -> None:
        self._fire(deal, event_name)
        deal.escalation_reason = reason
        self._timers_for(deal).cancel_all()
        await self._audit.record(AuditEventType.ESCALATED, deal, error=reason)
        if text is None:
            text = messages.outbound_failed() if payout_failed else messages.escalated_to_support()
        await self._notify(deal, text, mentions=deal.participants)
        logger.error("deal.escalated", reason=reason, trigger=event_name)

    async def _input_rejected(self, deal: DealRecord, stage: str) -> bool:
        """Count a rejected free-text input; return True if collection should stop."""
        if stage == "amount":
            deal.amount_attempts += 1
            attempts = deal.amount_attempts
        else:
            deal.address_attempts += 1
            attempts = deal.address_attempts
        logger.info("deal.input_rejected", stage=stage, attempts=attempts)

        cap = self._settings.max_input_attempts
        if cap is None or attempts < cap:
            return False
        if deal.status.is_pre_payment:
            await self._expire(deal, messages.too_many_attempts(), stage)
        else:
            await self._escalate(
                deal,
                "address_abandoned",
                f"{messages.too_many_attempts()} ({stage})",
                payout_failed=False,
            )
        return True

    # ------------------------------------------------------------------
    # Post-completion ballots
    # ------------------------------------------------------------------

    async def _on_privacy_vote(self, deal: DealRecord, actor_id: str, value: str | None) -> None:
        choice = _parse_choice(PrivacyChoice, value)
        ballot = deal.privacy_ballot
        ballot.cast(actor_id, choice)
        await self._notify(deal, messages.vote_recorded(actor_id, ballot.name))
        if not ballot.try_finalize():
            return
        await self._record_summary(deal)
        await self._notify(
            deal, messages.ask_close(), prompt=messages.CLOSE_PROMPT, mentions=deal.participants
        )

    async def _on_close_vote(self, deal: DealRecord, actor_id: str, value: str | None) -> None:
        choice = _parse_choice(CloseChoice, value)
        ballot = deal.close_ballot
        ballot.cast(actor_id, choice)
        await self._notify(deal, messages.vote_recorded(actor_id, ballot.name))
        if not ballot.try_finalize():
            return
        if ballot.unanimous is CloseChoice.CLOSE:
            await self._notify(deal, messages.closing_soon(self._settings.teardown_grace_seconds))
            self._schedule_teardown(deal)
            return
        ballot.reset()
        await self._notify(deal, messages.close_votes_disagree(), prompt=messages.CLOSE_PROMPT)

    async def _record_summary(self, deal: DealRecord) -> None:
        """Hand the completed deal to the stats sink exactly once."""
        if deal.status is not DealStatus.COMPLETED or not deal.summary_guard.claim():
            return
        if self._stats is None:
            return
        zero = Decimal("0")
        summary = CompletedDealSummary(
            deal_id=deal.deal_id,
            buyer_id=deal.buyer,
            seller_id=deal.seller,
            asset=deal.asset,
            deal_amount_usd=deal.deal_amount_usd or zero,
            fee_usd=deal.fee_usd or zero,
            buyer_paid_usd=deal.buyer_pays_usd or zero,
            seller_received_usd=deal.seller_receives_usd or zero,
            buyer_paid_crypto=deal.buyer_pays_crypto or zero,
            seller_received_crypto=deal.seller_receives_crypto or zero,
            payout_tx_ref=deal.payout_tx_ref or "",
            buyer_privacy=str(deal.privacy_ballot.vote_of(deal.buyer) or PrivacyChoice.ANONYMOUS),
            seller_privacy=str(
                deal.privacy_ballot.vote_of(deal.seller) or PrivacyChoice.ANONYMOUS
            ),
            completed_at=deal.completed_at or datetime.now(UTC),
            extra={"fee_payer": deal.fee_payer.value if deal.fee_payer else None},
        )
        try:
            await self._stats.record_completed_deal(summary)
        except Exception:
            logger.exception("deal.stats_failed")

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm_inactivity(self, deal: DealRecord) -> None:
        if deal.payment_started or not deal.status.is_pre_payment:
            return
        self._timers_for(deal).start(INACTIVITY, self._inactivity_timer(deal.deal_id))

    def _note_activity(self, deal: DealRecord) -> None:
        deal.touch()
        self._arm_inactivity(deal)
        self._arm_idle_close(deal)

    async def _inactivity_timer(self, deal_id: str) -> None:
        await asyncio.sleep(self._settings.inactivity_timeout_seconds)
        async with self._locked(deal_id) as deal:
            if deal is None or deal.payment_started or not deal.status.is_pre_payment:
                return
            logger.warning("deal.inactivity_timeout")
            await self._expire(deal, messages.inactivity_timed_out(), "inactivity")

    async def _absolute_timer(self, deal_id: str) -> None:
        await asyncio.sleep(self._settings.absolute_timeout_seconds)
        async with self._locked(deal_id) as deal:
            if deal is not None:
                await self._on_absolute_timeout(deal)

    async def _on_absolute_timeout(self, deal: DealRecord) -> None:
        if deal.status.is_terminal:
            return
        if not deal.payment_started and deal.status.is_pre_payment:
            logger.warning("deal.absolute_timeout", payment_started=False)
            await self._expire(deal, messages.deal_timed_out(), "absolute")
            return

        waiting = deal.status is DealStatus.AWAITING_DEPOSIT
        if waiting and deal.deposit_detected and not self._deposit_settled(deal):
            # Refund only settled funds; polling opens the refund flow on settlement.
            deal.refund_on_settle = True
            logger.warning("deal.absolute_timeout", payment_started=True, refund="on_settle")
            await self._audit.record(
                AuditEventType.TIMEOUT,
                deal,
                tx_ref=deal.deposit.tx_ref,
                outcome="refund_on_settle",
                confirmations=deal.deposit.confirmations,
            )
            await self._notify(
                deal, messages.timeout_awaiting_settlement(deal.buyer), mentions=(deal.buyer,)
            )
            return

        funded = deal.status is DealStatus.AWAITING_DELIVERY or (
            waiting and self._deposit_settled(deal)
        )
        if deal.status in REFUND_ELIGIBLE_STATUSES and funded:
            logger.warning("deal.absolute_timeout", payment_started=True, refund=True)
            await self._open_refund_window(deal)
            return

        logger.info("deal.absolute_timeout_exempt", status=deal.status.value)

    async def _open_refund_window(self, deal: DealRecord) -> None:
        """Move a funded deal that ran out of time into the refund flow."""
        timers = self._timers_for(deal)
        timers.cancel(POLL)
        timers.cancel(DEPOSIT_WINDOW)
        if deal.deposit_tx_ref is None and deal.deposit is not None:
            deal.deposit_tx_ref = deal.deposit.tx_ref
        self._fire(deal, "refund_window_opened")
        await self._audit.record(AuditEventType.TIMEOUT, deal, outcome="refund_flow")
        await self._notify(
            deal, messages.absolute_timeout_refund(deal.buyer), mentions=deal.participants
        )
        await self._prompt_refund_address(deal)

    async def _deposit_window_timer(self, deal_id: str) -> None:
        await asyncio.sleep(self._settings.deposit_window_seconds)
        async with self._locked(deal_id) as deal:
            if deal is None or deal.status is not DealStatus.AWAITING_DEPOSIT:
                return
            if deal.deposit is None:
                logger.warning("deal.deposit_window_expired")
                await self._expire(
                    deal,
                    messages.deposit_window_expired(deal.buyer),
                    "deposit_window",
                    event_name="deposit_window_expired",
                )
                return
            await self._escalate(
                deal,
                "deposit_stalled",
                f"deposit {deal.deposit.tx_ref} not settled within the deposit window",
                text=messages.deposit_stalled(),
            )

    async def _expire(
        self,
        deal: DealRecord,
        text: str,
        reason: str,
        *,
        event_name: str = "deal_expired",
    ) -> None:
        self._fire(deal, event_name)
        await self._audit.record(
            AuditEventType.TIMEOUT,
            deal,
            amount=deal.buyer_pays_crypto,
            outcome="timed_out",
            reason=reason,
        )
        await self._notify(deal, text, mentions=deal.participants)
        logger.info("deal.timed_out", reason=reason)
        self._schedule_teardown(deal)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _arm_idle_close(self, deal: DealRecord) -> None:
        """(Re)start the idle window of a completed or refunded deal."""
        if deal.status not in (DealStatus.COMPLETED, DealStatus.REFUNDED):
            return
        if deal.teardown_guard.claimed:
            return
        self._timers_for(deal).start(IDLE_CLOSE, self._idle_close_timer(deal.deal_id))

    async def _idle_close_timer(self, deal_id: str) -> None:
        await asyncio.sleep(self._settings.closed_deal_idle_seconds)
        async with self._locked(deal_id) as deal:
            if deal is None or deal.teardown_guard.claimed:
                return
            logger.info("deal.idle_close", status=deal.status.value)
            await self._notify(deal, messages.closing_idle(self._settings.teardown_grace_seconds))
            self._schedule_teardown(deal)

    def _schedule_teardown(self, deal: DealRecord) -> None:
        if not deal.teardown_guard.claim():
            return
        timers = self._timers_for(deal)
        timers.cancel_all(keep=(TEARDOWN,))
        timers.start(TEARDOWN, self._teardown(deal.deal_id))

    async def _teardown(self, deal_id: str) -> None:
        await asyncio.sleep(self._settings.teardown_grace_seconds)
        async with self._locked(deal_id) as deal:
            if deal is None:
                return
            await self._record_summary(deal)
            try:
                await self._messaging.delete_channel(deal_id)
            except Exception as exc:
                logger.warning("deal.channel_delete_failed", error=str(exc))
            self._deals.remove(deal_id)
            timers = self._timers.pop(deal_id, None)
            if timers is not None:
                timers.cancel_all()
            await self._audit.record(AuditEventType.DEAL_CLOSED, deal, status=deal.status.value)
            logger.info("deal.closed", status=deal.status.value)

    # ------------------------------------------------------------------
    # Free-text collectors
    # ------------------------------------------------------------------

    def _start_collector(
        self,
        deal: DealRecord,
        status: DealStatus,
        actor_id: str,
        handler: InputHandler,
    ) -> None:
        self._timers_for(deal).start(
            COLLECTOR, self._collect_loop(deal.deal_id, status, actor_id, handler)
        )

    async def _collect_loop(
        self,
        deal_id: str,
        status: DealStatus,
        actor_id: str,
        handler: InputHandler,
    ) -> None:
        """Read ``actor_id``'s messages until ``handler`` accepts one.

        The other participant is muted while collecting. A timed-out read is
        retried as long as the deal is still waiting in ``status``.
        """
        deal = self._deals.find(deal_id)
        if deal is None:
            return
        other = deal.other_party(actor_id)
        await self._set_posting(deal_id, other, False)
        try:
            while True:
                deal = self._deals.find(deal_id)
                if deal is None or deal.status is not status:
                    return
                text = await self._messaging.collect_message(
                    deal_id, actor_id, self._settings.collect_timeout_seconds
                )
                if text is None:
                    if not await self._messaging.channel_exists(deal_id):
                        return
                    continue
                async with self._locked(deal_id) as deal:
                    if deal is None or deal.status is not status:
                        return
                    try:
                        done = await handler(deal, text.strip())
                    except EscrowError as exc:
                        logger.warning("deal.input_failed", code=exc.code, stage=status.value)
                        await self._notify(
                            deal,
                            messages.action_failed(actor_id, exc.message, deal.payment_started),
                            mentions=(actor_id,),
                        )
                        done = False
                    except Exception:
                        logger.exception("deal.input_handler_failed", stage=status.value)
                        await self._notify(deal, messages.internal_error(deal.payment_started))
                        done = False
                    self._note_activity(deal)
                    if done:
                        return
        finally:
            await self._set_posting(deal_id, other, True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _timers_for(self, deal: DealRecord) -> DealTimers:
        timers = self._timers.get(deal.deal_id)
        if timers is None:
            timers = self._timers[deal.deal_id] = DealTimers(deal.deal_id)
        return timers

    @asynccontextmanager
    async def _locked(self, deal_id: str) -> AsyncIterator[DealRecord | None]:
        """Hold the deal's lock; yield None if the deal is gone."""
        if deal_id not in self._deals:
            yield None
            return
        async with self._deals.lock(deal_id):
            yield self._deals.find(deal_id)

    async def _notify(
        self,
        deal: DealRecord,
        text: str,
        *,
        prompt: Prompt | None = None,
        mentions: tuple[str, ...] = (),
    ) -> None:
        try:
            await self._messaging.send_message(
                deal.deal_id, text, prompt=prompt, mentions=tuple(m for m in mentions if m)
            )
        except Exception as exc:
            logger.warning("deal.notify_failed", error=str(exc))

    async def _set_posting(self, deal_id: str, actor_id: str, allowed: bool) -> None:
        try:
            if await self._messaging.channel_exists(deal_id):
                await self._messaging.set_posting_allowed(deal_id, actor_id, allowed)
        except Exception as exc:
            logger.warning("deal.permission_update_failed", actor_id=actor_id, error=str(exc))


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def refund_crypto_amount(deal: DealRecord) -> Decimal:
    """Crypto owed back to the buyer: the deposit less the earned fee.

    The refund is taken pro rata from the buyer-side quote, so no new quote
    is needed and price movement since the deposit is borne by the buyer.
    """
    paid_usd = deal.buyer_pays_usd
    paid_crypto = deal.buyer_pays_crypto
    if not paid_usd or not paid_crypto:
        raise ValidationError("Nothing was deposited for this deal.", code="NOTHING_TO_REFUND")
    refund_usd = to_cents(paid_usd - (deal.fee_usd or Decimal("0")))
    return to_crypto_units(paid_crypto * refund_usd / paid_usd)


def _parse_choice(enum_cls: type[Any], value: str | None) -> Any:
    try:
        return enum_cls(value)
    except ValueError as err:
        options = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"'{value}' is not a valid choice. Choose one of: {options}.",
            code="INVALID_CHOICE",
        ) from err
