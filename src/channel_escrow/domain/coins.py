"""Coin Registry: static table of supported assets.

Pure lookup with no mutable state. Stablecoins are listed under their
settlement network (ERC-20 for both USDT and USDC); the stablecoin surcharge
applies regardless of network.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType

from channel_escrow.domain.exceptions import UnsupportedAssetError


@dataclass(frozen=True)
class CoinSpec:
    """Registry entry for one supported asset.

    Attributes:
        symbol: Ticker used across the system and by the payment rail.
        min_deal_usd: Smallest deal amount accepted for this asset.
        required_confirmations: Confirmations the rail must report before a
            deposit is considered settled.
        settlement_network: Network passed to the rail for withdrawals.
        display_symbol: Human-facing label used in channel messages.
        price_id: Identifier of the asset at the price-quote provider.
        is_stablecoin: Whether the flat stablecoin surcharge applies.
    """

    symbol: str
    min_deal_usd: Decimal
    required_confirmations: int
    settlement_network: str
    display_symbol: str
    price_id: str
    is_stablecoin: bool = False


_REGISTRY: MappingProxyType[str, CoinSpec] = MappingProxyType(
    {
        "BTC": CoinSpec(
            symbol="BTC",
            min_deal_usd=Decimal("10.00"),
            required_confirmations=2,
            settlement_network="BTC",
            display_symbol="Bitcoin (BTC)",
            price_id="bitcoin",
        ),
        "ETH": CoinSpec(
            symbol="ETH",
            min_deal_usd=Decimal("5.00"),
            required_confirmations=12,
            settlement_network="ETH",
            display_symbol="Ethereum (ETH)",
            price_id="ethereum",
        ),
        "LTC": CoinSpec(
            symbol="LTC",
            min_deal_usd=Decimal("1.00"),
            required_confirmations=6,
            settlement_network="LTC",
            display_symbol="Litecoin (LTC)",
            price_id="litecoin",
        ),
        "SOL": CoinSpec(
            symbol="SOL",
            min_deal_usd=Decimal("1.00"),
            required_confirmations=1,
            settlement_network="SOL",
            display_symbol="Solana (SOL)",
            price_id="solana",
        ),
        "USDT": CoinSpec(
            symbol="USDT",
            min_deal_usd=Decimal("5.00"),
            required_confirmations=12,
            settlement_network="ETH",
            display_symbol="USDT (ERC-20)",
            price_id="tether",
            is_stablecoin=True,
        ),
        "USDC": CoinSpec(
            symbol="USDC",
            min_deal_usd=Decimal("5.00"),
            required_confirmations=12,
            settlement_network="ETH",
            display_symbol="USDC (ERC-20)",
            price_id="usd-coin",
            is_stablecoin=True,
        ),
    }
)


def get_coin(symbol: str) -> CoinSpec:
    """Look up an asset by symbol (case-insensitive).

    Raises:
        UnsupportedAssetError: If the symbol is not in the registry.
    """
    spec = _REGISTRY.get(symbol.strip().upper()) if symbol else None
    if spec is None:
        raise UnsupportedAssetError(symbol)
    return spec


def supported_symbols() -> list[str]:
    """Return every registered symbol in registry order."""
    return list(_REGISTRY)
