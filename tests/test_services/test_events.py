"""Tests for event buffering and delivery."""

from __future__ import annotations

import json
import uuid

import pytest
from conftest import FailingSink, RecordingSink

from middleman_escrow.domain.enums import EventType
from middleman_escrow.domain.exceptions import EventDeliveryError
from middleman_escrow.services.events import (
    DomainEvent,
    EventPublisher,
    LoggingEventSink,
    RedisEventSink,
)

TRADE_ID = uuid.uuid4()


class FakeRedis:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise ConnectionError("connection refused")
        self.published.append((channel, message))
        return 1


class TestEventPublisher:
    async def test_nothing_is_delivered_before_flush(self) -> None:
        sink = RecordingSink()
        publisher = EventPublisher(sink)
        publisher.emit(EventType.PAYMENT_VERIFIED, TRADE_ID, role="creator")
        assert sink.events == []
        assert len(publisher.pending) == 1

    async def test_flush_delivers_in_order(self) -> None:
        sink = RecordingSink()
        publisher = EventPublisher(sink)
        publisher.emit(EventType.PAYMENT_HOLD_CREATED, TRADE_ID)
        publisher.emit(EventType.PAYMENT_VERIFIED, TRADE_ID)

        assert await publisher.flush() == 2
        assert sink.types() == [EventType.PAYMENT_HOLD_CREATED, EventType.PAYMENT_VERIFIED]
        assert publisher.pending == []

    async def test_discard_drops_buffered_events(self) -> None:
        sink = RecordingSink()
        publisher = EventPublisher(sink)
        publisher.emit(EventType.ESCROW_RELEASED, TRADE_ID)
        publisher.discard()
        assert await publisher.flush() == 0
        assert sink.events == []

    async def test_failing_sink_never_raises(self) -> None:
        publisher = EventPublisher(FailingSink())
        publisher.emit(EventType.ESCROW_REFUNDED, TRADE_ID)
        assert await publisher.flush() == 0
        assert publisher.pending == []


class TestSinks:
    async def test_logging_sink(self) -> None:
        await LoggingEventSink().deliver(
            DomainEvent(type=EventType.MIDDLEMAN_ASSIGNED, trade_id=TRADE_ID, payload={"a": 1})
        )

    async def test_redis_sink_publishes_json(self) -> None:
        redis = FakeRedis()
        event = DomainEvent(type=EventType.MIDDLEMAN_ACCEPTED, trade_id=TRADE_ID, payload={"middleman_id": "m"})
        await RedisEventSink(redis, "escrow:events").deliver(event)

        channel, message = redis.published[0]
        body = json.loads(message)
        assert channel == "escrow:events"
        assert body["type"] == "middleman.accepted"
        assert body["trade_id"] == str(TRADE_ID)
        assert body["payload"] == {"middleman_id": "m"}

    async def test_redis_sink_wraps_failures(self) -> None:
        sink = RedisEventSink(FakeRedis(fail=True), "escrow:events")
        with pytest.raises(EventDeliveryError, match="Redis publish failed"):
            await sink.deliver(DomainEvent(type=EventType.ESCROW_RELEASED, trade_id=TRADE_ID))
