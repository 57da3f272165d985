"""SQLAlchemy 2.0 ORM models for the middleman escrow core.

Tables:
    1. trades                 — The trade and its authoritative status.
    2. escrow_holds           — One fund hold per party (owned by EscrowLedger).
    3. middleman_assignments  — Offers of a trade to a middleman (owned by the dispatcher).
    4. supervision_sessions   — Accepted supervision windows (owned by the dispatcher).
    5. trade_events           — Append-only audit log of every status change.
    6. trade_issues           — Issues reported by supervising middlemen.
    7. middlemen              — Directory backing the default roster.

Design decisions:
    - UUIDs as primary keys for trade-scoped rows.
    - Integer minor units for money (no floating point, no Decimal columns).
    - CHECK constraints on every status column to reject unknown values.
    - Partial unique indexes make "at most one live hold per (trade, role)"
      and "at most one live assignment per trade" a single atomic insert.
    - trade_events is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    event,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back as UTC.

    SQLite drivers return naive values; PostgreSQL returns aware ones.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value

    def process_result_value(self, value, dialect):  # noqa: ANN001
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. trades
# ---------------------------------------------------------------------------
class Trade(Base):
    """A peer-to-peer item trade supervised by a middleman."""

    __tablename__ = "trades"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Item ---
    item_name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    price_minor: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Trade price in minor currency units",
    )

    # --- Parties ---
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    participant_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="The one participant economically bound to the escrow",
    )
    creator_agreed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    participant_agreed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # --- Status (guarded by TradeLifecycleMachine) ---
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )
    payment_deadline: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, default=None
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'NEGOTIATING', 'PAYMENT_PENDING', 'PAYMENT_COMPLETE', "
            "'IN_PROGRESS', 'COMPLETED', 'CANCELLED', 'REFUNDED')",
            name="ck_trade_valid_status",
        ),
        CheckConstraint("price_minor > 0", name="ck_trade_positive_price"),
        Index("idx_trade_status", "status"),
        Index("idx_trade_creator", "creator_id"),
        Index("idx_trade_participant", "participant_id"),
        Index("idx_trade_payment_deadline", "payment_deadline"),
    )

    @property
    def terms_agreed(self) -> bool:
        return self.creator_agreed and self.participant_agreed

    def __repr__(self) -> str:
        return f"<Trade id={self.id} status={self.status} price={self.price_minor}>"


# ---------------------------------------------------------------------------
# 2. escrow_holds
# ---------------------------------------------------------------------------
class EscrowHold(Base):
    """Funds captured from one party and retained until release or refund."""

    __tablename__ = "escrow_holds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    trade_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("trades.id", ondelete="RESTRICT"), nullable=False
    )
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)

    # --- Amounts (minor units) ---
    amount_minor: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="subtotal + platform fee + processor fee"
    )
    subtotal_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    processor_fee_minor: Mapped[int] = mapped_column(Integer, nullable=False)

    external_ref: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        unique=True,
        default=None,
        comment="Opaque payment processor handle",
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="unpaid")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )
    settled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)

    __table_args__ = (
        CheckConstraint("role IN ('creator', 'participant')", name="ck_hold_valid_role"),
        CheckConstraint(
            "status IN ('unpaid', 'held', 'released', 'refunded', 'failed', 'voided')",
            name="ck_hold_valid_status",
        ),
        CheckConstraint("amount_minor > 0", name="ck_hold_positive_amount"),
        Index(
            "uq_hold_live_role",
            "trade_id",
            "role",
            unique=True,
            sqlite_where=text("status IN ('unpaid', 'held')"),
            postgresql_where=text("status IN ('unpaid', 'held')"),
        ),
        Index("idx_hold_trade", "trade_id"),
    )

    def __repr__(self) -> str:
        return f"<EscrowHold id={self.id} trade={self.trade_id} role={self.role} status={self.status}>"


# ---------------------------------------------------------------------------
# 3. middleman_assignments
# ---------------------------------------------------------------------------
class MiddlemanAssignment(Base):
    """An offer of a trade to one middleman, pending their answer."""

    __tablename__ = "middleman_assignments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    trade_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("trades.id", ondelete="RESTRICT"), nullable=False
    )
    middleman_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    assigned_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    responded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)
    decline_reason: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    estimated_response_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'accepted', 'declined', 'timed_out')",
            name="ck_assignment_valid_status",
        ),
        Index(
            "uq_assignment_live_trade",
            "trade_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'accepted')"),
            postgresql_where=text("status IN ('pending', 'accepted')"),
        ),
        Index("idx_assignment_middleman", "middleman_id"),
        Index("idx_assignment_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<MiddlemanAssignment trade={self.trade_id} middleman={self.middleman_id} "
            f"status={self.status}>"
        )


# ---------------------------------------------------------------------------
# 4. supervision_sessions
# ---------------------------------------------------------------------------
class SupervisionSession(Base):
    """The window during which an accepted middleman oversees a trade."""

    __tablename__ = "supervision_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    trade_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("trades.id", ondelete="RESTRICT"), nullable=False
    )
    assignment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("middleman_assignments.id", ondelete="RESTRICT"), nullable=False
    )
    middleman_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)
    decision: Mapped[str | None] = mapped_column(
        String(16), nullable=True, default=None, comment="approved | rejected | escalated"
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'completing', 'timed_out', 'completed')",
            name="ck_supervision_valid_status",
        ),
        Index(
            "uq_supervision_live_trade",
            "trade_id",
            unique=True,
            sqlite_where=text("status IN ('active', 'completing')"),
            postgresql_where=text("status IN ('active', 'completing')"),
        ),
        Index("idx_supervision_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<SupervisionSession trade={self.trade_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 5. trade_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class TradeEvent(Base):
    """Immutable audit record of a trade status change.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "trade_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    trade_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("trades.id", ondelete="RESTRICT"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True, default=None)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_event_trade", "trade_id"),
        Index("idx_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<TradeEvent trade={self.trade_id} {self.old_status}->{self.new_status}>"


# ---------------------------------------------------------------------------
# 6. trade_issues
# ---------------------------------------------------------------------------
class TradeIssue(Base):
    """An issue reported by the supervising middleman."""

    __tablename__ = "trade_issues"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    trade_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("trades.id", ondelete="RESTRICT"), nullable=False
    )
    middleman_id: Mapped[str] = mapped_column(String(64), nullable=False)
    issue_type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        CheckConstraint(
            "issue_type IN ('scam_attempt', 'item_mismatch', 'user_unresponsive', "
            "'technical_issue', 'other')",
            name="ck_issue_valid_type",
        ),
        Index("idx_issue_trade", "trade_id"),
    )


# ---------------------------------------------------------------------------
# 7. middlemen (directory)
# ---------------------------------------------------------------------------
class Middleman(Base):
    """A human reviewer that can be offered trades."""

    __tablename__ = "middlemen"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    average_response_time_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    rating: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)


# ---------------------------------------------------------------------------
# Register the auto-update listeners for updated_at
# ---------------------------------------------------------------------------
event.listen(Trade, "before_update", _set_updated_at)
event.listen(EscrowHold, "before_update", _set_updated_at)
