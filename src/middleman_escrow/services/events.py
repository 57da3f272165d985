"""Domain event delivery.

The core emits typed events for the real-time transport. Delivery is
fire-and-forget: a sink that fails never rolls back the state change that
produced the event.

Components emit into an ``EventPublisher`` owned by the unit of work. The
publisher buffers events and the coordinator flushes them only after the
database commit, so a rolled-back operation never announces anything.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from middleman_escrow.domain.enums import EventType
from middleman_escrow.domain.exceptions import EventDeliveryError
from middleman_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = get_logger(__name__)


class DomainEvent(BaseModel):
    """One event as it goes over the wire."""

    model_config = ConfigDict(frozen=True)

    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    type: EventType
    trade_id: uuid.UUID
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class EventSink(Protocol):
    async def deliver(self, event: DomainEvent) -> None:
        ...


class LoggingEventSink:
    """Writes every event to the structured log. The default sink."""

    async def deliver(self, event: DomainEvent) -> None:
        logger.info(
            "event.emitted",
            event_type=str(event.type),
            trade_id=str(event.trade_id),
            **event.payload,
        )


class RedisEventSink:
    """Publishes events as JSON on a Redis pub/sub channel."""

    def __init__(self, redis: aioredis.Redis, channel: str) -> None:
        self._redis = redis
        self._channel = channel

    async def deliver(self, event: DomainEvent) -> None:
        try:
            await self._redis.publish(self._channel, event.model_dump_json())
        except Exception as exc:
            raise EventDeliveryError(f"Redis publish failed: {exc}") from exc


class EventPublisher:
    """Per-unit-of-work event buffer."""

    def __init__(self, sink: EventSink) -> None:
        self._sink = sink
        self._pending: list[DomainEvent] = []

    @property
    def pending(self) -> list[DomainEvent]:
        return list(self._pending)

    def emit(self, event_type: EventType, trade_id: uuid.UUID, **payload: Any) -> DomainEvent:
        event = DomainEvent(type=event_type, trade_id=trade_id, payload=payload)
        self._pending.append(event)
        return event

    def discard(self) -> None:
        """Drop everything buffered; called when the unit of work rolls back."""
        self._pending.clear()

    async def flush(self) -> int:
        """Deliver buffered events in order. Returns how many were delivered."""
        events, self._pending = self._pending, []
        delivered = 0
        for event in events:
            try:
                await self._sink.deliver(event)
                delivered += 1
            except Exception as exc:
                logger.warning(
                    "event.delivery_failed",
                    event_type=str(event.type),
                    trade_id=str(event.trade_id),
                    error=str(exc),
                )
        return delivered
