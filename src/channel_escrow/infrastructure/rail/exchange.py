"""Exchange-backed Payment Rail.

Prices come from a CoinGecko-compatible ``/simple/price`` endpoint. Deposit
addresses, deposit history and withdrawals go to a Binance-compatible
``/sapi/v1/capital`` API signed with HMAC-SHA256.

Read calls are retried with exponential backoff on transport errors and 5xx
responses. Withdrawals are never retried: a timed-out withdrawal may still
have been accepted, and a blind retry risks paying twice.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from datetime import UTC, datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any
from urllib.parse import urlencode

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from channel_escrow.config import Settings, get_settings
from channel_escrow.domain.coins import get_coin
from channel_escrow.domain.enums import DepositStatus
from channel_escrow.domain.exceptions import RailError
from channel_escrow.domain.protocols import (
    DepositAddress,
    DepositRecord,
    Quote,
    WithdrawalReceipt,
)
from channel_escrow.logging_config import get_logger

logger = get_logger(__name__)

# Binance deposit status codes.
_DEPOSIT_STATUS = {
    0: DepositStatus.PENDING,
    6: DepositStatus.CREDITED,
    1: DepositStatus.SUCCESS,
}


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


def _parse_confirmations(raw: Any) -> int:
    """Binance reports confirmations as ``"3/12"``."""
    if raw is None:
        return 0
    head = str(raw).split("/", 1)[0].strip()
    return int(head) if head.isdigit() else 0


class ExchangeRail:
    """PaymentRail speaking to a custodial exchange over HTTPS."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        quote_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(
            base_url=self._settings.rail_base_url,
            timeout=self._settings.rail_timeout_seconds,
            headers={"X-MBX-APIKEY": self._settings.rail_api_key},
        )
        self._quote_client = quote_client or httpx.AsyncClient(
            base_url=self._settings.rail_quote_base_url,
            timeout=self._settings.rail_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
        await self._quote_client.aclose()

    # ------------------------------------------------------------------
    # PaymentRail
    # ------------------------------------------------------------------

    async def quote(self, asset: str, usd_amount: Decimal) -> Quote:
        coin = get_coin(asset)
        try:
            payload = await self._get_json(
                self._quote_client,
                "/simple/price",
                {"ids": coin.price_id, "vs_currencies": "usd"},
            )
            price = Decimal(str(payload[coin.price_id]["usd"]))
        except (httpx.HTTPError, KeyError, TypeError, InvalidOperation) as exc:
            logger.error("rail.quote_failed", asset=asset, error=str(exc))
            raise RailError("Failed to fetch crypto price. Please try again.", "quote") from exc

        if price <= 0:
            raise RailError(f"Price provider returned {price} for {asset}", "quote")

        crypto = (usd_amount / price).quantize(Decimal("0.00000001"), rounding=ROUND_DOWN)
        return Quote(
            asset=coin.symbol,
            usd_amount=usd_amount,
            crypto_amount=crypto,
            rate=price,
            quoted_at=datetime.now(UTC),
        )

    async def issue_deposit_address(self, asset: str) -> DepositAddress:
        coin = get_coin(asset)
        try:
            payload = await self._get_json(
                self._client,
                "/sapi/v1/capital/deposit/address",
                self._sign({"coin": coin.symbol, "network": coin.settlement_network}),
            )
            address = payload["address"]
        except (httpx.HTTPError, KeyError, TypeError) as exc:
            logger.error("rail.deposit_address_failed", asset=asset, error=str(exc))
            raise RailError("Failed to generate deposit address.", "deposit_address") from exc

        return DepositAddress(
            asset=coin.symbol,
            address=address,
            network=coin.settlement_network,
            tag=payload.get("tag") or None,
        )

    async def poll_deposits(self, asset: str, since: datetime) -> list[DepositRecord]:
        coin = get_coin(asset)
        start_ms = int(since.timestamp() * 1000)
        try:
            payload = await self._get_json(
                self._client,
                "/sapi/v1/capital/deposit/hisrec",
                self._sign({"coin": coin.symbol, "startTime": start_ms}),
            )
            return [self._to_deposit(coin.symbol, row) for row in payload]
        except (httpx.HTTPError, KeyError, TypeError, ValueError, InvalidOperation) as exc:
            logger.error("rail.deposit_history_failed", asset=asset, error=str(exc))
            raise RailError("Failed to check payment status.", "deposit_history") from exc

    async def withdraw(
        self,
        asset: str,
        amount: Decimal,
        destination: str,
        network: str,
    ) -> WithdrawalReceipt:
        coin = get_coin(asset)
        params = self._sign(
            {
                "coin": coin.symbol,
                "address": destination,
                "amount": format(amount, "f"),
                "network": network,
            }
        )
        try:
            response = await self._client.post(
                "/sapi/v1/capital/withdraw/apply", params=params
            )
            response.raise_for_status()
            payload = response.json()
            withdraw_id = str(payload["id"])
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            logger.error(
                "rail.withdraw_failed",
                asset=asset,
                amount=str(amount),
                destination=destination,
                error=str(exc),
            )
            raise RailError("Failed to send crypto. Please contact support.", "withdraw") from exc

        logger.info("rail.withdraw_submitted", asset=asset, withdraw_id=withdraw_id)
        return WithdrawalReceipt(
            tx_ref=payload.get("txId") or withdraw_id,
            withdraw_id=withdraw_id,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _sign(self, params: dict[str, Any]) -> dict[str, Any]:
        """Add timestamp, recvWindow and an HMAC-SHA256 signature."""
        signed = {
            **params,
            "recvWindow": self._settings.rail_recv_window_ms,
            "timestamp": int(time.time() * 1000),
        }
        signature = hmac.new(
            self._settings.rail_api_secret.encode(),
            urlencode(signed).encode(),
            hashlib.sha256,
        ).hexdigest()
        signed["signature"] = signature
        return signed

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _get_json(
        self,
        client: httpx.AsyncClient,
        path: str,
        params: dict[str, Any],
    ) -> Any:
        response = await client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _to_deposit(asset: str, row: dict[str, Any]) -> DepositRecord:
        return DepositRecord(
            asset=asset,
            amount=Decimal(str(row["amount"])),
            tx_ref=row.get("txId") or str(row.get("id", "")),
            confirmations=_parse_confirmations(row.get("confirmTimes")),
            status=_DEPOSIT_STATUS.get(int(row.get("status", -1)), DepositStatus.FAILED),
            inserted_at=datetime.fromtimestamp(int(row["insertTime"]) / 1000, tz=UTC),
            address=row.get("address"),
        )
