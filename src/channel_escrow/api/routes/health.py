"""Health check endpoint.

Verifies connectivity to the database and, when enabled, Redis, and reports
the number of open deals. Used by container healthchecks and load balancers.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from sqlalchemy import text

from channel_escrow import __version__
from channel_escrow.config import get_settings
from channel_escrow.infrastructure.database.engine import get_session_factory
from channel_escrow.logging_config import get_logger
from channel_escrow.schemas.deals import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(request: Request) -> HealthResponse:
    """Check connectivity to the database and Redis."""
    db_status = "unknown"
    redis_status = "disabled"

    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    if get_settings().redis_enabled:
        try:
            from channel_escrow.infrastructure.redis_client import get_redis

            await get_redis().ping()
            redis_status = "healthy"
        except Exception as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))

    healthy = db_status == "healthy" and redis_status in ("healthy", "disabled")
    orchestrator = getattr(request.app.state, "orchestrator", None)

    return HealthResponse(
        status="ok" if healthy else "degraded",
        version=__version__,
        database=db_status,
        redis=redis_status,
        open_deals=len(orchestrator.deals) if orchestrator is not None else 0,
    )
