"""Deal REST API routes.

Chat adapters drive deals through these endpoints: they open a channel for
two actors, forward button presses as actions and typed text as messages,
and read the channel transcript back. Operators resolve escalated deals.

Routes:
    POST   /api/v1/deals                     Open a deal channel
    GET    /api/v1/deals/{id}                Current deal state
    POST   /api/v1/deals/{id}/actions        Participant button press
    POST   /api/v1/deals/{id}/messages       Participant free-text message
    GET    /api/v1/deals/{id}/messages       Channel transcript
    POST   /api/v1/deals/{id}/resolve        Operator resolution of an escalated deal
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from channel_escrow.api.deps import get_messaging, get_orchestrator
from channel_escrow.domain.enums import DealStatus
from channel_escrow.infrastructure.messaging import InMemoryMessagingSurface
from channel_escrow.logging_config import get_logger
from channel_escrow.schemas.deals import (
    ActionRequest,
    ActionResponse,
    ChannelMessageResponse,
    DealResponse,
    MessageAccepted,
    MessageRequest,
    OpenDealRequest,
    ResolveRequest,
)
from channel_escrow.services.orchestrator import DealOrchestrator

router = APIRouter(prefix="/api/v1/deals", tags=["Deals"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Open / read
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=DealResponse,
    status_code=201,
    summary="Open a deal channel",
)
async def open_deal(
    request: OpenDealRequest,
    orchestrator: DealOrchestrator = Depends(get_orchestrator),
) -> DealResponse:
    """Create the negotiation channel and start role selection."""
    deal = await orchestrator.open_deal(request.initiator, request.counterparty, request.asset)
    return DealResponse.model_validate(orchestrator.describe(deal.deal_id))


@router.get(
    "/{deal_id}",
    response_model=DealResponse,
    summary="Get deal state",
)
async def get_deal(
    deal_id: str,
    orchestrator: DealOrchestrator = Depends(get_orchestrator),
) -> DealResponse:
    return DealResponse.model_validate(orchestrator.describe(deal_id))


# ---------------------------------------------------------------------------
# Participant input
# ---------------------------------------------------------------------------


@router.post(
    "/{deal_id}/actions",
    response_model=ActionResponse,
    summary="Apply a participant action",
)
async def post_action(
    deal_id: str,
    request: ActionRequest,
    response: Response,
    orchestrator: DealOrchestrator = Depends(get_orchestrator),
) -> ActionResponse:
    """Apply a button press. A rejected action answers 400 with the reason."""
    result = await orchestrator.handle_action(
        deal_id, request.actor_id, request.action, request.value
    )
    if not result.ok:
        response.status_code = 400
    return ActionResponse(
        ok=result.ok, status=result.status, code=result.code, message=result.message
    )


@router.post(
    "/{deal_id}/messages",
    response_model=MessageAccepted,
    status_code=202,
    summary="Post a participant message",
)
async def post_message(
    deal_id: str,
    request: MessageRequest,
    orchestrator: DealOrchestrator = Depends(get_orchestrator),
    messaging: InMemoryMessagingSurface = Depends(get_messaging),
) -> MessageAccepted:
    """Hand typed text to the deal (amount, payout or refund address)."""
    orchestrator.deals.get(deal_id)
    delivered = await messaging.post_message(deal_id, request.actor_id, request.text)
    logger.debug("deal.message_posted", deal_id=deal_id, delivered=delivered)
    return MessageAccepted(delivered=delivered)


@router.get(
    "/{deal_id}/messages",
    response_model=list[ChannelMessageResponse],
    summary="Read the channel transcript",
)
async def get_messages(
    deal_id: str,
    orchestrator: DealOrchestrator = Depends(get_orchestrator),
    messaging: InMemoryMessagingSurface = Depends(get_messaging),
) -> list[ChannelMessageResponse]:
    orchestrator.deals.get(deal_id)
    return [
        ChannelMessageResponse(
            message_id=m.message_id,
            author=m.author,
            text=m.text,
            options=[
                {"action": o.action.value, "label": o.label, "value": o.value}
                for o in (m.prompt.options if m.prompt else ())
            ],
        )
        for m in messaging.transcript(deal_id)
    ]


# ---------------------------------------------------------------------------
# Operator
# ---------------------------------------------------------------------------


@router.post(
    "/{deal_id}/resolve",
    response_model=DealResponse,
    summary="Resolve an escalated deal",
)
async def resolve_deal(
    deal_id: str,
    request: ResolveRequest,
    orchestrator: DealOrchestrator = Depends(get_orchestrator),
) -> DealResponse:
    """Record the operator's manual completion or refund. Escalated -> terminal."""
    await orchestrator.resolve_escalation(
        deal_id, DealStatus(request.outcome), tx_ref=request.tx_ref, note=request.note
    )
    return DealResponse.model_validate(orchestrator.describe(deal_id))
