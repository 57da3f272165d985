"""Shared test fixtures for the middleman escrow test suite.

Provides:
    - A file-backed SQLite database per test (aiosqlite)
    - A recording event sink, a static middleman roster, a simulated processor
    - A TradeCoordinator wired to all of the above
    - Helpers that drive a trade to a given point of its lifecycle
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from middleman_escrow.domain.dispatch import MiddlemanCandidate
from middleman_escrow.domain.enums import EventType, TradeStatus
from middleman_escrow.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    create_schema,
)
from middleman_escrow.orchestration.coordinator import TradeCoordinator
from middleman_escrow.services.events import DomainEvent, EventPublisher
from middleman_escrow.services.payment_processor import SimulatedPaymentProcessor
from middleman_escrow.services.roster import StaticRoster

CREATOR = "user_creator"
PARTICIPANT = "user_participant"
PRICE = 5000

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


class RecordingSink:
    """Event sink that keeps every delivered event in memory."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def deliver(self, event: DomainEvent) -> None:
        self.events.append(event)

    def types(self) -> list[EventType]:
        return [e.type for e in self.events]

    def of_type(self, event_type: EventType) -> list[DomainEvent]:
        return [e for e in self.events if e.type == event_type]


class FailingSink:
    async def deliver(self, event: DomainEvent) -> None:
        raise RuntimeError("transport down")


# ---------------------------------------------------------------------------
# Infrastructure Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def t0() -> datetime:
    """Fixed wall-clock origin; every test passes ``now`` explicitly."""
    return T0


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def publisher(sink: RecordingSink) -> EventPublisher:
    return EventPublisher(sink)


@pytest.fixture
def processor() -> SimulatedPaymentProcessor:
    return SimulatedPaymentProcessor()


@pytest.fixture
def candidates() -> list[MiddlemanCandidate]:
    return [
        MiddlemanCandidate("mm_alice", True, 0, 4.0, 4.9),
        MiddlemanCandidate("mm_bob", True, 1, 3.0, 4.8),
        MiddlemanCandidate("mm_carol", False, 0, 2.0, 5.0),
    ]


@pytest.fixture
def roster(candidates: list[MiddlemanCandidate]) -> StaticRoster:
    return StaticRoster(candidates)


@pytest.fixture
def coordinator(session_factory, processor, roster, sink) -> TradeCoordinator:
    return TradeCoordinator(session_factory, processor=processor, roster=roster, sink=sink)


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------


async def negotiated_trade(coordinator: TradeCoordinator, now: datetime, price: int = PRICE):
    """Create, join and agree: the trade ends in PAYMENT_PENDING with deadline now + 30m."""
    snapshot = await coordinator.create_trade(
        creator_id=CREATOR, item_name="Dragon sword", price_minor=price, now=now
    )
    trade_id = snapshot.trade_id
    assert (await coordinator.join_trade(trade_id, PARTICIPANT, now)).ok
    assert (await coordinator.agree_terms(trade_id, CREATOR, now)).ok
    agreed = await coordinator.agree_terms(trade_id, PARTICIPANT, now)
    assert agreed.unwrap() == TradeStatus.PAYMENT_PENDING
    return trade_id


async def paid_trade(
    coordinator: TradeCoordinator,
    processor: SimulatedPaymentProcessor,
    now: datetime,
):
    """Both holds captured; the trade is PAYMENT_COMPLETE with a pending assignment."""
    trade_id = await negotiated_trade(coordinator, now)
    creator = (await coordinator.initiate_payment(trade_id, CREATOR, now)).unwrap()
    participant = (await coordinator.initiate_payment(trade_id, PARTICIPANT, now)).unwrap()
    for receipt in (creator, participant):
        processor.capture(receipt.external_ref)
        await coordinator.confirm_payment_callback(
            receipt.external_ref, "succeeded", receipt.amount_due, now + timedelta(minutes=1)
        )
    return trade_id


async def supervised_trade(
    coordinator: TradeCoordinator,
    processor: SimulatedPaymentProcessor,
    now: datetime,
):
    """Paid and accepted by the first-choice middleman: the trade is IN_PROGRESS."""
    trade_id = await paid_trade(coordinator, processor, now)
    accepted = await coordinator.accept_assignment(trade_id, "mm_alice", now + timedelta(minutes=2))
    assert accepted.unwrap() == TradeStatus.IN_PROGRESS
    return trade_id
