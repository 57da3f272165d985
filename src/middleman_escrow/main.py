"""FastAPI application entry point for the middleman escrow service.

Lifecycle:
    1. Startup: logging, database (tables in dev mode), Redis when events
       are published there, the TradeCoordinator and the sweeper task.
    2. Running: serve the trade API.
    3. Shutdown: stop the sweeper, close database and Redis connections.

Run with:
    uvicorn middleman_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from middleman_escrow import __version__
from middleman_escrow.config import get_settings
from middleman_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from middleman_escrow.config import Settings
    from middleman_escrow.services.events import EventSink


async def _build_sink(settings: Settings) -> EventSink:
    from middleman_escrow.infrastructure.redis_client import init_redis
    from middleman_escrow.services.events import LoggingEventSink, RedisEventSink

    logger = get_logger(__name__)
    if settings.event_sink == "redis":
        try:
            redis = await init_redis()
        except Exception as exc:
            logger.warning("app.redis_unavailable", error=str(exc), fallback="log")
        else:
            return RedisEventSink(redis, settings.redis_event_channel)
    return LoggingEventSink()


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
    from middleman_escrow.infrastructure.database.engine import (
        close_db,
        get_session_factory,
        init_db,
    )

    await init_db()

    # 3. Event delivery (Redis pub/sub or the structured log)
    from middleman_escrow.infrastructure.redis_client import close_redis

    sink = await _build_sink(settings)

    # 4. The coordinator and its collaborators
    from middleman_escrow.orchestration import TradeCoordinator, run_sweeper
    from middleman_escrow.services import DatabaseRoster, SimulatedPaymentProcessor

    coordinator = TradeCoordinator.from_settings(
        get_session_factory(),
        settings,
        processor=SimulatedPaymentProcessor(),
        roster=DatabaseRoster(),
        sink=sink,
    )
    app.state.coordinator = coordinator

    # 5. Time-based enforcement
    stop = asyncio.Event()
    sweeper: asyncio.Task[None] | None = None
    if settings.sweeper_enabled:
        sweeper = asyncio.create_task(
            run_sweeper(coordinator, settings.sweeper_interval_seconds, stop)
        )

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    stop.set()
    if sweeper is not None:
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Middleman Escrow",
        description=(
            "Escrow and middleman-supervision core for peer-to-peer trades. "
            "Both parties bond funds; a human middleman decides release or refund."
        ),
        version=__version__,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from middleman_escrow.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from middleman_escrow.api.routes.health import router as health_router
    from middleman_escrow.api.routes.trades import router as trades_router

    app.include_router(health_router)
    app.include_router(trades_router)

    return app


# The app instance used by Uvicorn
app = create_app()
