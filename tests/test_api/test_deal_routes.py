"""Tests for the deal and stats routes.

The app is built with ``create_app`` and driven through httpx's ASGI
transport. The lifespan is not run: the orchestrator, messaging surface and
stats session are wired in directly.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest
from conftest import BUYER, SELLER, eventually

from channel_escrow.api.deps import get_stats_service
from channel_escrow.domain.enums import DealStatus
from channel_escrow.domain.protocols import CompletedDealSummary
from channel_escrow.main import create_app
from channel_escrow.services.stats_service import SqlStatsSink, StatsService


@pytest.fixture
def app(orchestrator, surface, session_factory):
    application = create_app()
    application.state.orchestrator = orchestrator
    application.state.messaging = surface

    async def stats_override():
        async with session_factory() as session:
            yield StatsService(session)

    application.dependency_overrides[get_stats_service] = stats_override
    return application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _open(client: httpx.AsyncClient, asset: str = "LTC") -> str:
    response = await client.post(
        "/api/v1/deals", json={"initiator": BUYER, "counterparty": SELLER, "asset": asset}
    )
    assert response.status_code == 201
    return response.json()["deal_id"]


async def _act(client, deal_id, actor, action, value=None) -> httpx.Response:
    return await client.post(
        f"/api/v1/deals/{deal_id}/actions",
        json={"actor_id": actor, "action": action, "value": value},
    )


def _summary() -> CompletedDealSummary:
    return CompletedDealSummary(
        deal_id="deal-api",
        buyer_id=BUYER,
        seller_id=SELLER,
        asset="LTC",
        deal_amount_usd=Decimal("40.00"),
        fee_usd=Decimal("1.00"),
        buyer_paid_usd=Decimal("40.50"),
        seller_received_usd=Decimal("39.50"),
        buyer_paid_crypto=Decimal("0.50625042"),
        seller_received_crypto=Decimal("0.49375000"),
        payout_tx_ref="0xabc",
        buyer_privacy="public",
        seller_privacy="public",
        completed_at=datetime(2026, 3, 1, tzinfo=UTC),
    )


class TestDealRoutes:
    @pytest.mark.asyncio
    async def test_open_and_read_deal(self, client) -> None:
        deal_id = await _open(client)

        response = await client.get(f"/api/v1/deals/{deal_id}")

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "awaiting_role_selection"
        assert body["asset"] == "LTC"
        assert "claim_buyer" in body["allowed_actions"]
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_open_rejects_unknown_asset(self, client) -> None:
        response = await client.post(
            "/api/v1/deals", json={"initiator": BUYER, "counterparty": SELLER, "asset": "DOGE"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "UNSUPPORTED_ASSET"

    @pytest.mark.asyncio
    async def test_unknown_deal_is_404(self, client) -> None:
        response = await client.get("/api/v1/deals/deal-missing")
        assert response.status_code == 404
        assert response.json()["error"] == "DEAL_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_actions_and_messages(self, client, surface, orchestrator) -> None:
        deal_id = await _open(client)

        ok = await _act(client, deal_id, BUYER, "claim_buyer")
        assert ok.status_code == 200
        assert ok.json()["ok"] is True

        rejected = await _act(client, deal_id, SELLER, "claim_buyer")
        assert rejected.status_code == 400
        assert rejected.json()["code"] == "ROLE_CONFLICT"

        await _act(client, deal_id, SELLER, "claim_seller")
        await eventually(lambda: surface.is_collecting(deal_id, BUYER))
        posted = await client.post(
            f"/api/v1/deals/{deal_id}/messages", json={"actor_id": BUYER, "text": "40"}
        )
        assert posted.status_code == 202
        assert posted.json() == {"delivered": True}

        deal = orchestrator.deals.get(deal_id)
        await eventually(lambda: deal.status is DealStatus.AWAITING_SELLER_APPROVAL)
        body = (await client.get(f"/api/v1/deals/{deal_id}")).json()
        assert body["deal_amount_usd"] == "40.00"

    @pytest.mark.asyncio
    async def test_unknown_action_is_422(self, client) -> None:
        deal_id = await _open(client)
        response = await _act(client, deal_id, BUYER, "dance")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_transcript(self, client) -> None:
        deal_id = await _open(client)

        response = await client.get(f"/api/v1/deals/{deal_id}/messages")

        messages = response.json()
        assert response.status_code == 200
        assert messages[0]["author"] == "escrow-bot"
        assert {o["action"] for o in messages[0]["options"]} == {
            "claim_buyer",
            "claim_seller",
            "reset_roles",
        }

    @pytest.mark.asyncio
    async def test_resolve_requires_escalation(self, client) -> None:
        deal_id = await _open(client)
        response = await client.post(
            f"/api/v1/deals/{deal_id}/resolve", json={"outcome": "completed"}
        )
        assert response.status_code == 409


class TestStatsRoutes:
    @pytest.mark.asyncio
    async def test_profile_and_leaderboard(self, client, session_factory) -> None:
        await SqlStatsSink(session_factory).record_completed_deal(_summary())

        profile = await client.get(f"/api/v1/stats/users/{BUYER}")
        assert profile.status_code == 200
        assert profile.json()["total_deals"] == 1

        board = await client.get("/api/v1/stats/leaderboard/sellers")
        assert [row["user_id"] for row in board.json()] == [SELLER]

        analytics = await client.get("/api/v1/stats/analytics")
        assert analytics.json()["by_coin"][0]["coin"] == "LTC"

        coin = await client.get("/api/v1/stats/coins/ltc/deals")
        assert len(coin.json()) == 1

    @pytest.mark.asyncio
    async def test_unknown_leaderboard_is_400(self, client) -> None:
        response = await client.get("/api/v1/stats/leaderboard/whales")
        assert response.status_code == 400
        assert response.json()["error"] == "UNKNOWN_LEADERBOARD"
