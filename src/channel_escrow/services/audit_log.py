"""Append-only audit trail for money-relevant deal events.

Each ``AuditEntry`` is fanned out to every configured sink: the
``audit_events`` table and a JSON-lines file. Audit writes must never
break a deal, so a failing sink is logged and skipped.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from channel_escrow.infrastructure.database.repositories import AuditRepository
from channel_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from channel_escrow.domain.deal import DealRecord
    from channel_escrow.domain.enums import AuditEventType

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    """One audit record."""

    event_type: str
    deal_id: str
    asset: str | None = None
    amount: Decimal | None = None
    tx_ref: str | None = None
    buyer: str | None = None
    seller: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_json(self) -> str:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return json.dumps(data, default=str)


class AuditSink(Protocol):
    async def write(self, entry: AuditEntry) -> None: ...


class SqlAuditSink:
    """Writes entries to the ``audit_events`` table, one session per entry."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def write(self, entry: AuditEntry) -> None:
        async with self._session_factory() as session:
            await AuditRepository(session).record(
                entry.event_type,
                entry.deal_id,
                asset=entry.asset,
                amount=entry.amount,
                tx_ref=entry.tx_ref,
                buyer=entry.buyer,
                seller=entry.seller,
                error=entry.error,
                metadata=entry.metadata or None,
                created_at=entry.created_at,
            )
            await session.commit()


class JsonlAuditSink:
    """Appends entries to a JSON-lines file off the event loop."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def write(self, entry: AuditEntry) -> None:
        line = entry.to_json() + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append, line)

    def _append(self, line: str) -> None:
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line)


class AuditLog:
    """Fan-out audit writer used by the orchestrator."""

    def __init__(self, sinks: list[AuditSink] | None = None) -> None:
        self._sinks: list[AuditSink] = list(sinks or [])

    async def record(
        self,
        event_type: AuditEventType,
        deal: DealRecord,
        *,
        amount: Decimal | None = None,
        tx_ref: str | None = None,
        error: str | None = None,
        **metadata: Any,
    ) -> AuditEntry:
        """Build an entry from the deal record and write it to every sink."""
        entry = AuditEntry(
            event_type=str(event_type),
            deal_id=deal.deal_id,
            asset=deal.asset,
            amount=amount,
            tx_ref=tx_ref,
            buyer=deal.buyer,
            seller=deal.seller,
            error=error,
            metadata={k: v for k, v in metadata.items() if v is not None},
        )
        await self.write(entry)
        return entry

    async def write(self, entry: AuditEntry) -> None:
        for sink in self._sinks:
            try:
                await sink.write(entry)
            except Exception as exc:
                logger.warning(
                    "audit.write_failed",
                    sink=type(sink).__name__,
                    event_type=entry.event_type,
                    deal_id=entry.deal_id,
                    error=str(exc),
                )
