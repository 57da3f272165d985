"""Database infrastructure — engine, ORM models, and repositories."""

from middleman_escrow.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    close_db,
    create_schema,
    get_session_factory,
    init_db,
)
from middleman_escrow.infrastructure.database.orm_models import (
    Base,
    EscrowHold,
    Middleman,
    MiddlemanAssignment,
    SupervisionSession,
    Trade,
    TradeEvent,
    TradeIssue,
)
from middleman_escrow.infrastructure.database.repositories import (
    AssignmentRepository,
    EventRepository,
    HoldRepository,
    IssueRepository,
    MiddlemanRepository,
    SupervisionRepository,
    TradeRepository,
)

__all__ = [
    "Base",
    "EscrowHold",
    "Middleman",
    "MiddlemanAssignment",
    "SupervisionSession",
    "Trade",
    "TradeEvent",
    "TradeIssue",
    "AssignmentRepository",
    "EventRepository",
    "HoldRepository",
    "IssueRepository",
    "MiddlemanRepository",
    "SupervisionRepository",
    "TradeRepository",
    "build_engine",
    "build_session_factory",
    "create_schema",
    "get_session_factory",
    "init_db",
    "close_db",
]
