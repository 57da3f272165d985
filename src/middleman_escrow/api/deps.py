"""FastAPI dependency injection providers.

Route handlers get the process-wide TradeCoordinator and the caller's
asserted identity. Authentication happens upstream; this layer only reads
the identity the auth layer forwarded in ``X-Actor-Id``.
"""

from __future__ import annotations

from fastapi import Header, Request

from middleman_escrow.config import Settings, get_settings
from middleman_escrow.orchestration.coordinator import TradeCoordinator


def get_coordinator(request: Request) -> TradeCoordinator:
    """Provide the coordinator built in the application lifespan."""
    return request.app.state.coordinator


def get_actor_id(
    x_actor_id: str = Header(..., min_length=1, max_length=64, alias="X-Actor-Id"),
) -> str:
    """The authenticated caller, as asserted by the auth layer."""
    return x_actor_id


def get_optional_actor_id(
    x_actor_id: str | None = Header(default=None, max_length=64, alias="X-Actor-Id"),
) -> str | None:
    """Viewer identity for read endpoints; anonymous viewers are allowed."""
    return x_actor_id


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()
