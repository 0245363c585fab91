"""Participant-facing channel messages.

Every failure message says what went wrong, what to do next and whether
funds are safe. Builders return plain strings (and prompts where the
participants answer with a button) so any chat adapter can render them.
"""

from __future__ import annotations

from decimal import Decimal

from channel_escrow.domain.address_validator import address_hint
from channel_escrow.domain.coins import CoinSpec
from channel_escrow.domain.enums import CloseChoice, DealAction, FeePayer, PrivacyChoice
from channel_escrow.domain.protocols import Prompt, PromptOption

FUNDS_NOT_SENT = "No funds have been sent yet."
FUNDS_HELD = "Funds are held safely in escrow."


def usd(amount: Decimal | None) -> str:
    return "-" if amount is None else f"${amount:,.2f}"


def crypto(amount: Decimal | None, symbol: str) -> str:
    return "-" if amount is None else f"{amount:f} {symbol}"


def mention(actor_id: str) -> str:
    return f"<@{actor_id}>"


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

ROLE_PROMPT = Prompt(
    (
        PromptOption(DealAction.CLAIM_BUYER, "I'm the buyer"),
        PromptOption(DealAction.CLAIM_SELLER, "I'm the seller"),
        PromptOption(DealAction.RESET_ROLES, "Reset"),
    )
)

APPROVAL_PROMPT = Prompt(
    (
        PromptOption(DealAction.APPROVE_AMOUNT, "Approve"),
        PromptOption(DealAction.REJECT_AMOUNT, "Reject"),
    )
)

FEE_PROMPT = Prompt(
    (
        PromptOption(DealAction.VOTE_FEE_PAYER, "Buyer pays", FeePayer.BUYER.value),
        PromptOption(DealAction.VOTE_FEE_PAYER, "Seller pays", FeePayer.SELLER.value),
        PromptOption(DealAction.VOTE_FEE_PAYER, "Split 50/50", FeePayer.SPLIT.value),
    )
)

DELIVERY_PROMPT = Prompt((PromptOption(DealAction.CONFIRM_DELIVERY, "I've delivered"),))

RECEIPT_PROMPT = Prompt(
    (
        PromptOption(DealAction.CONFIRM_RECEIPT, "Received"),
        PromptOption(DealAction.REPORT_NOT_RECEIVED, "Not received"),
    )
)

DISPUTE_PROMPT = Prompt(
    (
        PromptOption(DealAction.APPROVE_REFUND, "Refund the buyer"),
        PromptOption(DealAction.ESCALATE, "Contact support"),
        PromptOption(DealAction.CONFIRM_RECEIPT, "Buyer: received after all"),
    )
)

PAYOUT_CONFIRM_PROMPT = Prompt(
    (
        PromptOption(DealAction.CONFIRM_PAYOUT, "Confirm address"),
        PromptOption(DealAction.CANCEL_PAYOUT, "Change address"),
    )
)

PRIVACY_PROMPT = Prompt(
    (
        PromptOption(DealAction.VOTE_PRIVACY, "Show my name", PrivacyChoice.PUBLIC.value),
        PromptOption(DealAction.VOTE_PRIVACY, "Stay anonymous", PrivacyChoice.ANONYMOUS.value),
    )
)

CLOSE_PROMPT = Prompt(
    (
        PromptOption(DealAction.VOTE_CLOSE, "Close channel", CloseChoice.CLOSE.value),
        PromptOption(DealAction.VOTE_CLOSE, "Keep open", CloseChoice.KEEP_OPEN.value),
    )
)


# ---------------------------------------------------------------------------
# Negotiation
# ---------------------------------------------------------------------------


def welcome(coin: CoinSpec, initiator: str, counterparty: str) -> str:
    return (
        f"Escrow deal opened between {mention(initiator)} and {mention(counterparty)} "
        f"for {coin.display_symbol}.\nPick your role: one buyer, one seller."
    )


def role_claimed(actor_id: str, role: str) -> str:
    return f"{mention(actor_id)} is the {role}."


def roles_reset() -> str:
    return "Roles cleared. Pick your role again: one buyer, one seller."


def ask_amount(buyer: str, coin: CoinSpec) -> str:
    return (
        f"{mention(buyer)}, type the deal amount in USD "
        f"(minimum {usd(coin.min_deal_usd)} for {coin.symbol})."
    )


def amount_below_minimum(coin: CoinSpec) -> str:
    return (
        f"The minimum deal for {coin.symbol} is {usd(coin.min_deal_usd)}. "
        f"Type a larger amount. {FUNDS_NOT_SENT}"
    )


def ask_approval(seller: str, amount: Decimal) -> str:
    return f"{mention(seller)}, the buyer proposes {usd(amount)}. Approve or reject?"


def amount_rejected(buyer: str) -> str:
    return f"The seller rejected the amount. {mention(buyer)}, enter a new amount."


def fee_ballot(fee: Decimal, amount: Decimal) -> str:
    return (
        f"Deal amount {usd(amount)}, service fee {usd(fee)}.\n"
        "Both of you vote who pays the fee. Votes must match."
    )


def fee_votes_disagree(round_number: int) -> str:
    return (
        f"Your fee votes did not match. Please vote again (round {round_number}). "
        f"{FUNDS_NOT_SENT}"
    )


def fee_waived(amount: Decimal) -> str:
    return f"No service fee applies to a {usd(amount)} deal. Preparing the deposit address."


def deposit_instructions(
    buyer: str,
    coin: CoinSpec,
    address: str,
    network: str,
    crypto_amount: Decimal,
    usd_amount: Decimal,
) -> str:
    return (
        f"{mention(buyer)}, send exactly {crypto(crypto_amount, coin.symbol)} "
        f"({usd(usd_amount)}) to:\n{address}\nNetwork: {network}\n"
        "Send the exact amount shown; it identifies your payment."
    )


def deposit_generation_failed() -> str:
    return (
        "Could not prepare the deposit address right now. "
        f"Please vote again to retry. {FUNDS_NOT_SENT}"
    )


def deposit_generation_failed_zero_fee() -> str:
    return (
        "Could not prepare the deposit address right now. "
        f"Seller, press Approve again to retry. {FUNDS_NOT_SENT}"
    )


def deposit_detected(amount: Decimal, symbol: str) -> str:
    return (
        f"Payment of {crypto(amount, symbol)} detected. "
        "Waiting for network confirmations before releasing the next step."
    )


def deposit_confirmed(seller: str) -> str:
    return (
        f"Payment confirmed. {FUNDS_HELD}\n"
        f"{mention(seller)}, deliver the goods or service, then press the button below."
    )


def ask_receipt(buyer: str) -> str:
    return f"{mention(buyer)}, the seller says it's delivered. Did you receive it?"


# ---------------------------------------------------------------------------
# Dispute and refund
# ---------------------------------------------------------------------------


def dispute_opened(seller: str) -> str:
    return (
        f"The buyer reports nothing was received. {FUNDS_HELD}\n"
        f"{mention(seller)}, refund the buyer or contact support."
    )


def ask_refund_address(buyer: str, symbol: str) -> str:
    return (
        f"{mention(buyer)}, type the {symbol} address for your refund.\n"
        f"{address_hint(symbol)}"
    )


def refund_sent(amount: Decimal, symbol: str, tx_ref: str) -> str:
    return f"Refund of {crypto(amount, symbol)} sent. Reference: {tx_ref}"


def absolute_timeout_refund(buyer: str) -> str:
    return (
        f"The deal time limit was reached before delivery. {FUNDS_HELD} "
        f"{mention(buyer)} will be refunded."
    )


# ---------------------------------------------------------------------------
# Payout
# ---------------------------------------------------------------------------


def ask_payout_address(seller: str, symbol: str) -> str:
    return (
        f"{mention(seller)}, type the {symbol} address to receive your payout.\n"
        f"{address_hint(symbol)}"
    )


def invalid_address(reason: str | None, symbol: str) -> str:
    return (
        f"That address is not valid: {reason or 'unknown format'}. "
        f"{address_hint(symbol)} Please type it again. {FUNDS_HELD}"
    )


def confirm_payout_address(seller: str, address: str, amount: Decimal, symbol: str) -> str:
    return (
        f"{mention(seller)}, send {crypto(amount, symbol)} to:\n{address}\n"
        "Confirm, or change the address. Transfers cannot be reversed."
    )


def payout_sent(amount: Decimal, symbol: str, tx_ref: str) -> str:
    return f"Payout of {crypto(amount, symbol)} sent. Reference: {tx_ref}\nDeal complete."


def outbound_failed() -> str:
    return (
        "The transfer could not be sent. Your funds are NOT lost: they are held in "
        "the escrow account.\nDo NOT close this channel. Support has been notified "
        "and will complete the transfer manually."
    )


def escalated_to_support() -> str:
    return (
        f"This deal has been escalated to support. {FUNDS_HELD} "
        "Do not close this channel; an operator will follow up here."
    )


def too_many_attempts() -> str:
    return "Too many invalid attempts."


# ---------------------------------------------------------------------------
# Post-completion
# ---------------------------------------------------------------------------


def ask_privacy() -> str:
    return "Should your name appear in the public deal record? Each of you choose."


def ask_close() -> str:
    return "Close this channel? Both of you must agree."


def close_votes_disagree() -> str:
    return "You did not both choose to close. Vote again whenever you're ready."


def closing_soon(seconds: float) -> str:
    return f"This channel will be deleted in {int(seconds)} seconds."


# ---------------------------------------------------------------------------
# Timeouts and errors
# ---------------------------------------------------------------------------


def deal_timed_out() -> str:
    return (
        f"This deal reached its time limit without payment. {FUNDS_NOT_SENT} "
        "The channel will be closed; start a new deal when you're ready."
    )


def inactivity_timed_out() -> str:
    return (
        f"No activity for a while, so this deal is being closed. {FUNDS_NOT_SENT} "
        "Start a new deal when you're ready."
    )


def deposit_window_expired(buyer: str) -> str:
    return (
        f"{mention(buyer)} no deposit arrived in time, so this deal is being closed. "
        "Do not send funds to the old deposit address. If you already sent them, "
        "contact support with your transaction reference."
    )


def timeout_awaiting_settlement(buyer: str) -> str:
    return (
        "This deal reached its time limit while your deposit is still confirming. "
        f"{mention(buyer)} once it is confirmed you'll be asked for a refund address."
    )


def deposit_stalled() -> str:
    return (
        "Your deposit did not confirm in time. Support has been notified and "
        "will resolve this deal manually. Any funds that arrive are held safely in escrow."
    )


def closing_idle(seconds: float) -> str:
    return (
        "This deal is finished and idle. "
        f"The channel will be deleted in {int(seconds)} seconds."
    )


def action_failed(actor_id: str, reason: str, payment_started: bool) -> str:
    funds = FUNDS_HELD if payment_started else FUNDS_NOT_SENT
    return f"{mention(actor_id)} {reason} {funds}"


def internal_error(payment_started: bool) -> str:
    funds = FUNDS_HELD if payment_started else FUNDS_NOT_SENT
    return f"Something went wrong handling that. Please try again. {funds}"


def vote_recorded(actor_id: str, ballot: str) -> str:
    return f"{mention(actor_id)} voted on the {ballot} ballot."


def operator_completed() -> str:
    return "Support has completed the payout for this deal. Deal complete."


def operator_refunded() -> str:
    return "Support has refunded the buyer for this deal."
