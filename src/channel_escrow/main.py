"""FastAPI application entry point for the channel escrow coordinator.

Lifecycle:
    1. Startup: initialize logging, database, optional Redis payout guard,
       the payment rail and the deal orchestrator.
    2. Running: serve the deal, stats and health routes on one Uvicorn process.
       Deals live in this process's memory; run a single worker.
    3. Shutdown: cancel every deal's timers, close the rail, database and Redis.

Run with:
    uvicorn channel_escrow.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from channel_escrow import __version__
from channel_escrow.config import get_settings
from channel_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info("app.starting", env=settings.app_env, debug=settings.app_debug)

    # 2. Initialize database
    from channel_escrow.infrastructure.database.engine import (
        close_db,
        get_session_factory,
        init_db,
    )

    await init_db()

    # 3. Payout idempotency guard (Redis if configured)
    from channel_escrow.infrastructure.redis_client import (
        InMemoryPayoutGuard,
        RedisPayoutGuard,
        close_redis,
        init_redis,
    )

    payout_guard: RedisPayoutGuard | InMemoryPayoutGuard = InMemoryPayoutGuard()
    if settings.redis_enabled:
        try:
            payout_guard = RedisPayoutGuard(await init_redis())
        except Exception as exc:
            logger.warning("app.redis_unavailable", error=str(exc))

    # 4. Collaborators and orchestrator
    from channel_escrow.infrastructure.messaging import InMemoryMessagingSurface
    from channel_escrow.infrastructure.rail import build_rail
    from channel_escrow.services.audit_log import AuditLog, JsonlAuditSink, SqlAuditSink
    from channel_escrow.services.orchestrator import DealOrchestrator
    from channel_escrow.services.stats_service import SqlStatsSink

    session_factory = get_session_factory()
    rail = build_rail(settings)
    messaging = InMemoryMessagingSurface()
    audit = AuditLog([SqlAuditSink(session_factory), JsonlAuditSink(settings.audit_log_path)])

    app.state.messaging = messaging
    app.state.rail = rail
    app.state.orchestrator = DealOrchestrator(
        rail,
        messaging,
        settings=settings,
        audit=audit,
        stats=SqlStatsSink(session_factory),
        payout_guard=payout_guard,
    )

    logger.info(
        "app.started",
        host=settings.app_host,
        port=settings.app_port,
        rail=type(rail).__name__,
    )

    yield

    # Shutdown
    logger.info("app.shutting_down")
    await app.state.orchestrator.shutdown()
    aclose = getattr(rail, "aclose", None)
    if aclose is not None:
        await aclose()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory: creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Channel Escrow",
        description=(
            "Two-party crypto escrow coordinator for ephemeral chat channels."
        ),
        version=__version__,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from channel_escrow.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from channel_escrow.api.routes.deals import router as deals_router
    from channel_escrow.api.routes.health import router as health_router
    from channel_escrow.api.routes.stats import router as stats_router

    app.include_router(health_router)
    app.include_router(deals_router)
    app.include_router(stats_router)

    return app


# The app instance used by Uvicorn
app = create_app()
