"""Database infrastructure: engine, ORM models, and repositories."""

from channel_escrow.infrastructure.database.engine import (
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
)
from channel_escrow.infrastructure.database.orm_models import (
    AuditEvent,
    Base,
    Commission,
    CompletedDeal,
    UserStats,
)
from channel_escrow.infrastructure.database.repositories import (
    AuditRepository,
    DealStatsRepository,
)

__all__ = [
    "Base",
    "AuditEvent",
    "Commission",
    "CompletedDeal",
    "UserStats",
    "AuditRepository",
    "DealStatsRepository",
    "get_async_session",
    "get_session_factory",
    "init_db",
    "close_db",
]
