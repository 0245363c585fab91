"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the deal orchestrator and the messaging surface.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from channel_escrow.infrastructure.database.engine import get_async_session
from channel_escrow.infrastructure.messaging import InMemoryMessagingSurface
from channel_escrow.services.orchestrator import DealOrchestrator
from channel_escrow.services.stats_service import StatsService


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_orchestrator(request: Request) -> DealOrchestrator:
    """Provide the process-wide orchestrator built in the lifespan."""
    return request.app.state.orchestrator


def get_messaging(request: Request) -> InMemoryMessagingSurface:
    """Provide the in-process messaging surface chat adapters post into."""
    return request.app.state.messaging


async def get_stats_service(
    session: AsyncSession = Depends(get_db_session),
) -> StatsService:
    """Provide a StatsService bound to the current session."""
    return StatsService(session)
