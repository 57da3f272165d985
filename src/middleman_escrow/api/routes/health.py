"""Health check endpoint.

Verifies connectivity to the database and, when events go to Redis, to
Redis. Used by container healthchecks and load balancers.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text

from middleman_escrow import __version__
from middleman_escrow.api.deps import get_app_settings
from middleman_escrow.config import Settings
from middleman_escrow.infrastructure.database.engine import get_engine
from middleman_escrow.infrastructure.redis_client import get_redis, redis_available
from middleman_escrow.logging_config import get_logger
from middleman_escrow.schemas.trade import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(settings: Settings = Depends(get_app_settings)) -> HealthResponse:
    db_status = "unknown"
    redis_status = "not_configured"

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    if settings.event_sink == "redis" or redis_available():
        try:
            await get_redis().ping()
            redis_status = "healthy"
        except Exception as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))

    healthy_redis = redis_status in ("healthy", "not_configured")
    overall = "ok" if db_status == "healthy" and healthy_redis else "degraded"

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        redis=redis_status,
    )
