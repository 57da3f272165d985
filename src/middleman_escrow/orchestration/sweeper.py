"""Periodic sweeper that drives time-based enforcement.

Nothing in the core times out passively: a trade is only expired once a
sweep evaluates it and records the outcome. The loop runs inside the
FastAPI lifespan; any scheduler that calls ``TradeCoordinator.sweep`` on an
interval works the same way.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from middleman_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from middleman_escrow.orchestration.coordinator import TradeCoordinator

logger = get_logger(__name__)


async def run_sweeper(
    coordinator: TradeCoordinator,
    interval_seconds: float,
    stop: asyncio.Event,
) -> None:
    """Sweep every ``interval_seconds`` until ``stop`` is set."""
    logger.info("sweeper.started", interval_seconds=interval_seconds)
    while not stop.is_set():
        try:
            await coordinator.sweep()
        except Exception as exc:
            # Storage outages must not kill the loop; the next tick retries.
            logger.exception("sweeper.pass_failed", error=str(exc))
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except TimeoutError:
            continue
    logger.info("sweeper.stopped")
