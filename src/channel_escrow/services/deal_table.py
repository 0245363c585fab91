"""In-memory table of open deals, keyed by channel id.

Deals live only as long as their channel. Each deal gets its own
``asyncio.Lock`` so participant actions and timer callbacks for the same
deal are handled one at a time, while different deals run concurrently.

The table also remembers which deal claimed each inbound deposit. Claims
outlive the deal so a deposit can never fund a second deal.
"""

from __future__ import annotations

import asyncio

from channel_escrow.domain.deal import DealRecord
from channel_escrow.domain.exceptions import DealAlreadyOpenError, DealNotFoundError


class DealTable:
    """Registry of live deal records and their per-deal locks."""

    def __init__(self) -> None:
        self._deals: dict[str, DealRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._deposit_claims: dict[str, str] = {}

    def add(self, deal: DealRecord) -> DealRecord:
        if deal.deal_id in self._deals:
            raise DealAlreadyOpenError(deal.deal_id)
        self._deals[deal.deal_id] = deal
        self._locks[deal.deal_id] = asyncio.Lock()
        return deal

    def get(self, deal_id: str) -> DealRecord:
        deal = self._deals.get(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        return deal

    def find(self, deal_id: str) -> DealRecord | None:
        return self._deals.get(deal_id)

    def lock(self, deal_id: str) -> asyncio.Lock:
        lock = self._locks.get(deal_id)
        if lock is None:
            raise DealNotFoundError(deal_id)
        return lock

    def remove(self, deal_id: str) -> DealRecord | None:
        self._locks.pop(deal_id, None)
        return self._deals.pop(deal_id, None)

    def all(self) -> list[DealRecord]:
        return list(self._deals.values())

    def __contains__(self, deal_id: object) -> bool:
        return deal_id in self._deals

    def __len__(self) -> int:
        return len(self._deals)

    # ------------------------------------------------------------------
    # Deposit claims
    # ------------------------------------------------------------------

    def claim_deposit(self, tx_ref: str, deal_id: str) -> bool:
        """Tie a deposit to ``deal_id``; False if another deal holds it."""
        owner = self._deposit_claims.setdefault(tx_ref, deal_id)
        return owner == deal_id

    def deposit_owner(self, tx_ref: str) -> str | None:
        return self._deposit_claims.get(tx_ref)

    def deposits_claimed_by_others(self, deal_id: str) -> frozenset[str]:
        return frozenset(
            tx_ref for tx_ref, owner in self._deposit_claims.items() if owner != deal_id
        )
