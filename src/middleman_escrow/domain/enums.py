"""Domain enumerations for the middleman escrow core.

Every entity status is a closed enumeration. Nothing in the system compares
against free-form status strings; unknown values fail at parse time.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class TradeStatus(enum.StrEnum):
    """Lifecycle states of a trade.

    Transitions are enforced by TradeLifecycleMachine.
    See domain/state_machine.py for the transition table.
    """

    ACTIVE = "ACTIVE"
    NEGOTIATING = "NEGOTIATING"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_COMPLETE = "PAYMENT_COMPLETE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class HoldRole(enum.StrEnum):
    """Which side of the trade an escrow hold bonds."""

    CREATOR = "creator"
    PARTICIPANT = "participant"


class HoldStatus(enum.StrEnum):
    """Status of a single escrow hold.

    UNPAID and HELD are the only non-terminal values.
    """

    UNPAID = "unpaid"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    FAILED = "failed"
    VOIDED = "voided"

    @property
    def is_terminal(self) -> bool:
        return self not in (HoldStatus.UNPAID, HoldStatus.HELD)


class ProcessorOutcome(enum.StrEnum):
    """What the payment processor reports for a hold reference."""

    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


class EscrowStatus(enum.StrEnum):
    """Coarse escrow view for callers that don't need per-party detail."""

    PENDING = "pending"
    PARTIAL = "partial"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class AssignmentStatus(enum.StrEnum):
    """Status of a middleman assignment offer."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TIMED_OUT = "timed_out"


class SupervisionStatus(enum.StrEnum):
    """Status of a supervision session."""

    ACTIVE = "active"
    COMPLETING = "completing"
    TIMED_OUT = "timed_out"
    COMPLETED = "completed"


class ActorRole(enum.StrEnum):
    """Role of an actor relative to one trade."""

    CREATOR = "creator"
    PARTICIPANT = "participant"
    MIDDLEMAN = "middleman"
    VIEWER = "viewer"


class TradeAction(enum.StrEnum):
    """Actions covered by the role/action permission matrix."""

    JOIN = "join"
    MESSAGE = "message"
    PAY = "pay"
    CANCEL = "cancel"


class IssueType(enum.StrEnum):
    """Issue categories a supervising middleman can report."""

    SCAM_ATTEMPT = "scam_attempt"
    ITEM_MISMATCH = "item_mismatch"
    USER_UNRESPONSIVE = "user_unresponsive"
    TECHNICAL_ISSUE = "technical_issue"
    OTHER = "other"

    @property
    def escalates(self) -> bool:
        """Escalated issues cancel the trade and refund both holds."""
        return self in (IssueType.SCAM_ATTEMPT, IssueType.ITEM_MISMATCH)


class EnforcementActionType(enum.StrEnum):
    """What the deadline tracker asks the scheduler to do."""

    NONE = "none"
    WARNING = "warning"
    REFUND = "refund"
    CANCEL = "cancel"


class Urgency(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationChannel(enum.StrEnum):
    WEBSOCKET = "websocket"
    EMAIL = "email"
    PUSH = "push"


class NotificationPriority(enum.StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class EventType(enum.StrEnum):
    """Domain events emitted by the core for the real-time transport.

    Delivery is fire-and-forget; a failed delivery never rolls back the
    state change that produced the event.
    """

    TRADE_STATUS_CHANGED = "trade.status_changed"

    PAYMENT_HOLD_CREATED = "payment.hold_created"
    PAYMENT_VERIFIED = "payment.verified"
    PAYMENT_DEADLINE_WARNING = "payment.deadline_warning"

    ESCROW_RELEASED = "escrow.released"
    ESCROW_REFUNDED = "escrow.refunded"

    MIDDLEMAN_ASSIGNED = "middleman.assigned"
    MIDDLEMAN_ACCEPTED = "middleman.accepted"
    MIDDLEMAN_DECLINED = "middleman.declined"
    MIDDLEMAN_TIMED_OUT = "middleman.timed_out"

    SUPERVISION_TIMED_OUT = "supervision.timed_out"
    SUPERVISION_ISSUE_REPORTED = "supervision.issue_reported"
