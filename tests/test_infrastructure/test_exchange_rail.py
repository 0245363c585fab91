"""Tests for the exchange-backed payment rail, using httpx.MockTransport."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest

from channel_escrow.config import Settings
from channel_escrow.domain.enums import DepositStatus
from channel_escrow.domain.exceptions import RailError
from channel_escrow.infrastructure.rail import ExchangeRail, SimulatedRail, build_rail
from channel_escrow.infrastructure.rail.exchange import _is_transient, _parse_confirmations

SINCE = datetime(2026, 1, 1, tzinfo=UTC)


def _settings() -> Settings:
    return Settings(rail_simulate=False, rail_api_key="key", rail_api_secret="secret")


def _rail(handler) -> ExchangeRail:
    transport = httpx.MockTransport(handler)
    return ExchangeRail(
        _settings(),
        client=httpx.AsyncClient(base_url="https://exchange.test", transport=transport),
        quote_client=httpx.AsyncClient(base_url="https://prices.test", transport=transport),
    )


class TestQuote:
    @pytest.mark.asyncio
    async def test_quote_converts_usd(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/simple/price"
            assert request.url.params["ids"] == "litecoin"
            return httpx.Response(200, json={"litecoin": {"usd": 80}})

        quote = await _rail(handler).quote("LTC", Decimal("40.50"))

        assert quote.crypto_amount == Decimal("0.50625000")
        assert quote.rate == Decimal("80")

    @pytest.mark.asyncio
    async def test_missing_price_is_rail_error(self) -> None:
        rail = _rail(lambda request: httpx.Response(200, json={}))
        with pytest.raises(RailError) as exc_info:
            await rail.quote("LTC", Decimal("40"))
        assert exc_info.value.operation == "quote"

    @pytest.mark.asyncio
    async def test_zero_price_is_rail_error(self) -> None:
        rail = _rail(lambda request: httpx.Response(200, json={"bitcoin": {"usd": 0}}))
        with pytest.raises(RailError):
            await rail.quote("BTC", Decimal("40"))


class TestDeposits:
    @pytest.mark.asyncio
    async def test_deposit_address_is_signed(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"address": "LhuT4yi9LnRfdQS4Lj6gRK4xLLaYQDwE11"})

        address = await _rail(handler).issue_deposit_address("LTC")

        assert address.address == "LhuT4yi9LnRfdQS4Lj6gRK4xLLaYQDwE11"
        assert address.network == "LTC"
        params = seen[0].url.params
        assert params["coin"] == "LTC"
        assert "signature" in params
        assert seen[0].headers["X-MBX-APIKEY"] == "key"

    @pytest.mark.asyncio
    async def test_history_rows_are_parsed(self) -> None:
        rows = [
            {
                "amount": "0.50625042",
                "txId": "0xin",
                "confirmTimes": "3/6",
                "status": 1,
                "insertTime": 1767225600000,
            },
            {"amount": "1", "txId": "0xpending", "status": 0, "insertTime": 1767225600000},
            {"amount": "1", "txId": "0xodd", "status": 7, "insertTime": 1767225600000},
        ]
        rail = _rail(lambda request: httpx.Response(200, json=rows))

        deposits = await rail.poll_deposits("LTC", SINCE)

        assert deposits[0].amount == Decimal("0.50625042")
        assert deposits[0].confirmations == 3
        assert deposits[0].status is DepositStatus.SUCCESS
        assert deposits[0].inserted_at == datetime(2026, 1, 1, tzinfo=UTC)
        assert deposits[1].status is DepositStatus.PENDING
        assert deposits[2].status is DepositStatus.FAILED

    @pytest.mark.asyncio
    async def test_malformed_history_is_rail_error(self) -> None:
        rail = _rail(lambda request: httpx.Response(200, json=[{"txId": "0x"}]))
        with pytest.raises(RailError):
            await rail.poll_deposits("LTC", SINCE)


class TestWithdraw:
    @pytest.mark.asyncio
    async def test_withdraw_returns_tx_ref(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "w-1", "txId": "0xout"})

        receipt = await _rail(handler).withdraw(
            "LTC", Decimal("0.49375000"), "MQMcJhpWHYVeQArcZR3sBgyPZxxRtnH441", "LTC"
        )

        assert receipt.tx_ref == "0xout"
        assert receipt.withdraw_id == "w-1"
        assert seen[0].method == "POST"
        assert seen[0].url.params["amount"] == "0.49375000"

    @pytest.mark.asyncio
    async def test_server_error_is_not_retried(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(503)

        with pytest.raises(RailError) as exc_info:
            await _rail(handler).withdraw("LTC", Decimal("1"), "addr", "LTC")

        assert exc_info.value.operation == "withdraw"
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_rejected_withdrawal(self) -> None:
        rail = _rail(lambda request: httpx.Response(400, json={"msg": "insufficient balance"}))
        with pytest.raises(RailError):
            await rail.withdraw("LTC", Decimal("1"), "addr", "LTC")


class TestHelpers:
    def test_transient_errors(self) -> None:
        request = httpx.Request("GET", "https://exchange.test")
        assert _is_transient(httpx.ConnectError("down", request=request))
        server = httpx.HTTPStatusError(
            "boom", request=request, response=httpx.Response(502, request=request)
        )
        client = httpx.HTTPStatusError(
            "bad", request=request, response=httpx.Response(400, request=request)
        )
        assert _is_transient(server)
        assert not _is_transient(client)

    @pytest.mark.parametrize(("raw", "expected"), [("3/12", 3), ("12/12", 12), (None, 0), ("x", 0)])
    def test_parse_confirmations(self, raw, expected) -> None:
        assert _parse_confirmations(raw) == expected

    def test_build_rail(self) -> None:
        assert isinstance(build_rail(Settings(rail_simulate=True)), SimulatedRail)
        assert isinstance(build_rail(_settings()), ExchangeRail)
