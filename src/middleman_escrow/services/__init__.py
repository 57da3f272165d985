"""Application services — the stateful components and their collaborators."""

from middleman_escrow.services.escrow_ledger import EscrowLedger
from middleman_escrow.services.events import (
    DomainEvent,
    EventPublisher,
    EventSink,
    LoggingEventSink,
    RedisEventSink,
)
from middleman_escrow.services.middleman_dispatcher import MiddlemanDispatcher
from middleman_escrow.services.payment_processor import (
    PaymentProcessor,
    SimulatedPaymentProcessor,
)
from middleman_escrow.services.roster import DatabaseRoster, MiddlemanRoster, StaticRoster
from middleman_escrow.services.trade_lifecycle import TradeLifecycle

__all__ = [
    "DatabaseRoster",
    "DomainEvent",
    "EscrowLedger",
    "EventPublisher",
    "EventSink",
    "LoggingEventSink",
    "MiddlemanDispatcher",
    "MiddlemanRoster",
    "PaymentProcessor",
    "RedisEventSink",
    "SimulatedPaymentProcessor",
    "StaticRoster",
    "TradeLifecycle",
]
