"""Payout address shape checks.

A pure, stateless predicate per asset: ``validate_address(address, asset)``
never performs I/O. It checks the general shape of an address (prefix,
alphabet, length); it does not prove that the address exists on chain.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from channel_escrow.domain.coins import get_coin
from channel_escrow.domain.exceptions import UnsupportedAssetError

_BASE58 = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BECH32 = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

_BTC_LEGACY = re.compile(rf"^[13][{_BASE58}]{{25,34}}$")
_BTC_BECH32 = re.compile(rf"^bc1[{_BECH32}]{{8,87}}$")
_LTC_LEGACY = re.compile(rf"^[LM][{_BASE58}]{{26,33}}$")
_LTC_BECH32 = re.compile(rf"^ltc1[{_BECH32}]{{8,86}}$")
_EVM = re.compile(r"^0x[a-fA-F0-9]{40}$")
_SOLANA = re.compile(rf"^[{_BASE58}]{{32,44}}$")


@dataclass(frozen=True)
class AddressCheck:
    """Result of an address check; ``reason`` is set when invalid."""

    valid: bool
    reason: str | None = None


def _check_btc(address: str) -> str | None:
    if _BTC_LEGACY.match(address) or _BTC_BECH32.match(address):
        return None
    return "Bitcoin addresses must start with 1, 3, or bc1"


def _check_ltc(address: str) -> str | None:
    if _LTC_LEGACY.match(address) or _LTC_BECH32.match(address):
        return None
    return "Litecoin addresses must start with L, M, or ltc1"


def _check_evm(address: str) -> str | None:
    if _EVM.match(address):
        return None
    return "Ethereum addresses must start with 0x and be 42 characters"


def _check_sol(address: str) -> str | None:
    if _SOLANA.match(address):
        return None
    return "Solana addresses must be 32-44 base58 characters"


# Checks keyed by settlement network.
_NETWORK_CHECKS = {
    "BTC": _check_btc,
    "LTC": _check_ltc,
    "ETH": _check_evm,
    "SOL": _check_sol,
}

ADDRESS_HINTS = {
    "BTC": "Bitcoin addresses start with 1 (legacy), 3 (SegWit) or bc1 (native SegWit).",
    "LTC": "Litecoin addresses start with L, M or ltc1.",
    "ETH": "Ethereum-network addresses start with 0x and are exactly 42 characters.",
    "SOL": "Solana addresses are 32-44 base58 characters.",
}


def validate_address(address: str, asset: str) -> AddressCheck:
    """Check that ``address`` has a plausible shape for ``asset``."""
    try:
        coin = get_coin(asset)
    except UnsupportedAssetError:
        return AddressCheck(False, f"Unsupported coin: {asset}")

    if not address or not isinstance(address, str):
        return AddressCheck(False, "Address is required")

    if any(ch.isspace() for ch in address):
        return AddressCheck(False, "Address contains spaces")

    if len(address) < 26 or len(address) > 90:
        return AddressCheck(False, "Address length is invalid")

    reason = _NETWORK_CHECKS[coin.settlement_network](address)
    if reason is not None:
        return AddressCheck(False, reason)
    return AddressCheck(True)


def address_hint(asset: str) -> str:
    """Return a one-line format reminder for an asset's payout address."""
    try:
        network = get_coin(asset).settlement_network
    except UnsupportedAssetError:
        return "Please make sure the address format is correct for your coin."
    return ADDRESS_HINTS[network]
