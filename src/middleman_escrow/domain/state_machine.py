"""Trade Lifecycle State Machine Guard.

Uses python-statemachine to enforce legal trade status transitions at the
domain level. The transition table below is the single source of truth:
the machine's events are declared from the same edges, and every edge that
carries a business predicate is listed in ``_REQUIREMENTS``.

Transition table:
    ACTIVE           -> NEGOTIATING       (participant_joined)   needs participant
    ACTIVE           -> CANCELLED         (trade_cancelled)
    NEGOTIATING      -> PAYMENT_PENDING   (terms_agreed)         needs both agreed
    NEGOTIATING      -> CANCELLED         (trade_cancelled)
    NEGOTIATING      -> ACTIVE            (participant_left)
    PAYMENT_PENDING  -> PAYMENT_COMPLETE  (payments_verified)    needs both holds
    PAYMENT_PENDING  -> REFUNDED          (escrow_refunded)
    PAYMENT_PENDING  -> CANCELLED         (trade_cancelled)
    PAYMENT_COMPLETE -> IN_PROGRESS       (supervision_started)  needs accepted assignment
    PAYMENT_COMPLETE -> REFUNDED          (escrow_refunded)
    IN_PROGRESS      -> COMPLETED         (middleman_approved)   needs approval
    IN_PROGRESS      -> CANCELLED         (trade_cancelled)

COMPLETED, CANCELLED and REFUNDED are terminal.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from statemachine import State, StateMachine

from middleman_escrow.domain.enums import TradeStatus
from middleman_escrow.domain.results import ErrorCode, Result

TRANSITION_EVENTS: dict[tuple[TradeStatus, TradeStatus], str] = {
    (TradeStatus.ACTIVE, TradeStatus.NEGOTIATING): "participant_joined",
    (TradeStatus.ACTIVE, TradeStatus.CANCELLED): "trade_cancelled",
    (TradeStatus.NEGOTIATING, TradeStatus.PAYMENT_PENDING): "terms_agreed",
    (TradeStatus.NEGOTIATING, TradeStatus.CANCELLED): "trade_cancelled",
    (TradeStatus.NEGOTIATING, TradeStatus.ACTIVE): "participant_left",
    (TradeStatus.PAYMENT_PENDING, TradeStatus.PAYMENT_COMPLETE): "payments_verified",
    (TradeStatus.PAYMENT_PENDING, TradeStatus.REFUNDED): "escrow_refunded",
    (TradeStatus.PAYMENT_PENDING, TradeStatus.CANCELLED): "trade_cancelled",
    (TradeStatus.PAYMENT_COMPLETE, TradeStatus.IN_PROGRESS): "supervision_started",
    (TradeStatus.PAYMENT_COMPLETE, TradeStatus.REFUNDED): "escrow_refunded",
    (TradeStatus.IN_PROGRESS, TradeStatus.COMPLETED): "middleman_approved",
    (TradeStatus.IN_PROGRESS, TradeStatus.CANCELLED): "trade_cancelled",
}

ALLOWED_TRANSITIONS: dict[TradeStatus, frozenset[TradeStatus]] = {
    status: frozenset(target for (source, target) in TRANSITION_EVENTS if source == status)
    for status in TradeStatus
}

TERMINAL_STATUSES: frozenset[TradeStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


@dataclass(frozen=True)
class TransitionContext:
    """Facts the edge predicates are evaluated against.

    Each flag is supplied by the component that owns the fact: the lifecycle
    (participant, agreement), the ledger (both holds verified) and the
    dispatcher (accepted assignment, approval decision).
    """

    has_participant: bool = False
    terms_agreed: bool = False
    both_paid: bool = False
    has_accepted_assignment: bool = False
    middleman_approved: bool = False


_REQUIREMENTS: dict[tuple[TradeStatus, TradeStatus], tuple[str, Callable[[TransitionContext], bool]]] = {
    (TradeStatus.ACTIVE, TradeStatus.NEGOTIATING): (
        "a participant must be bound to the trade",
        lambda ctx: ctx.has_participant,
    ),
    (TradeStatus.NEGOTIATING, TradeStatus.PAYMENT_PENDING): (
        "both parties must agree on terms",
        lambda ctx: ctx.terms_agreed,
    ),
    (TradeStatus.PAYMENT_PENDING, TradeStatus.PAYMENT_COMPLETE): (
        "both escrow holds must be verified",
        lambda ctx: ctx.both_paid,
    ),
    (TradeStatus.PAYMENT_COMPLETE, TradeStatus.IN_PROGRESS): (
        "a middleman assignment must be accepted",
        lambda ctx: ctx.has_accepted_assignment,
    ),
    (TradeStatus.IN_PROGRESS, TradeStatus.COMPLETED): (
        "the middleman must approve the trade",
        lambda ctx: ctx.middleman_approved,
    ),
}


class TradeLifecycleMachine(StateMachine):
    """State machine that guards trade status transitions.

    Usage:
        sm = TradeLifecycleMachine(current_status="PAYMENT_PENDING")
        sm.payments_verified()  # transitions to PAYMENT_COMPLETE
        sm.status               # "PAYMENT_COMPLETE"
    """

    # --- States ---
    ACTIVE = State("ACTIVE", initial=True)
    NEGOTIATING = State("NEGOTIATING")
    PAYMENT_PENDING = State("PAYMENT_PENDING")
    PAYMENT_COMPLETE = State("PAYMENT_COMPLETE")
    IN_PROGRESS = State("IN_PROGRESS")
    COMPLETED = State("COMPLETED", final=True)
    CANCELLED = State("CANCELLED", final=True)
    REFUNDED = State("REFUNDED", final=True)

    # --- Events / Transitions ---

    # Negotiation
    participant_joined = ACTIVE.to(NEGOTIATING)
    participant_left = NEGOTIATING.to(ACTIVE)
    terms_agreed = NEGOTIATING.to(PAYMENT_PENDING)

    # Escrow
    payments_verified = PAYMENT_PENDING.to(PAYMENT_COMPLETE)
    escrow_refunded = PAYMENT_PENDING.to(REFUNDED) | PAYMENT_COMPLETE.to(REFUNDED)

    # Supervision
    supervision_started = PAYMENT_COMPLETE.to(IN_PROGRESS)
    middleman_approved = IN_PROGRESS.to(COMPLETED)

    # Cancellation
    trade_cancelled = (
        ACTIVE.to(CANCELLED)
        | NEGOTIATING.to(CANCELLED)
        | PAYMENT_PENDING.to(CANCELLED)
        | IN_PROGRESS.to(CANCELLED)
    )

    def __init__(self, current_status: str = "ACTIVE") -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown status '{current_status}'. Valid states: {valid}")
        super().__init__(start_value=str(current_status))

    @property
    def status(self) -> TradeStatus:
        return TradeStatus(str(self.current_state_value))


def can_transition(from_status: TradeStatus, to_status: TradeStatus) -> bool:
    """Pure membership test against the adjacency table."""
    return to_status in ALLOWED_TRANSITIONS[TradeStatus(from_status)]


def validate_transition(
    from_status: TradeStatus,
    to_status: TradeStatus,
    context: TransitionContext,
) -> Result[TradeStatus]:
    """Check the edge structurally, then its bound business predicate.

    Returns:
        Result carrying ``to_status`` on success, INVALID_TRANSITION for an
        edge outside the table, REQUIREMENT_NOT_MET for a failed predicate.
    """
    if not can_transition(from_status, to_status):
        return Result.failure(
            ErrorCode.INVALID_TRANSITION,
            f"Invalid transition from {from_status} to {to_status}",
        )

    requirement = _REQUIREMENTS.get((TradeStatus(from_status), TradeStatus(to_status)))
    if requirement is not None:
        description, predicate = requirement
        if not predicate(context):
            return Result.failure(
                ErrorCode.REQUIREMENT_NOT_MET,
                f"Requirement not met for {from_status} -> {to_status}: {description}",
            )

    return Result.success(TradeStatus(to_status))


def apply_transition(from_status: TradeStatus, to_status: TradeStatus) -> TradeStatus:
    """Fire the machine event for an edge and return the resulting status.

    Raises:
        ValueError: If the edge is not in the transition table.
        TransitionNotAllowed: If the machine refuses the event.
    """
    event_name = TRANSITION_EVENTS.get((TradeStatus(from_status), TradeStatus(to_status)))
    if event_name is None:
        raise ValueError(f"No event for transition {from_status} -> {to_status}")
    sm = TradeLifecycleMachine(current_status=from_status)
    sm.send(event_name)
    return sm.status


def next_statuses(status: TradeStatus) -> list[TradeStatus]:
    """Statuses reachable in one step, in declaration order."""
    return [s for s in TradeStatus if s in ALLOWED_TRANSITIONS[TradeStatus(status)]]


def is_terminal(status: TradeStatus) -> bool:
    return TradeStatus(status) in TERMINAL_STATUSES


_STATUS_DESCRIPTIONS: dict[TradeStatus, str] = {
    TradeStatus.ACTIVE: "Available for trading",
    TradeStatus.NEGOTIATING: "Users are negotiating terms",
    TradeStatus.PAYMENT_PENDING: "Waiting for payments",
    TradeStatus.PAYMENT_COMPLETE: "Payments received, awaiting middleman",
    TradeStatus.IN_PROGRESS: "Middleman supervising trade",
    TradeStatus.COMPLETED: "Trade completed successfully",
    TradeStatus.CANCELLED: "Trade was cancelled",
    TradeStatus.REFUNDED: "Payments have been refunded",
}

_STATUS_PROGRESS: dict[TradeStatus, int] = {
    TradeStatus.ACTIVE: 10,
    TradeStatus.NEGOTIATING: 25,
    TradeStatus.PAYMENT_PENDING: 50,
    TradeStatus.PAYMENT_COMPLETE: 75,
    TradeStatus.IN_PROGRESS: 90,
    TradeStatus.COMPLETED: 100,
    TradeStatus.CANCELLED: 0,
    TradeStatus.REFUNDED: 0,
}


def status_description(status: TradeStatus) -> str:
    return _STATUS_DESCRIPTIONS[TradeStatus(status)]


def progress_percentage(status: TradeStatus) -> int:
    """Coarse lifecycle progress used by trade listings."""
    return _STATUS_PROGRESS[TradeStatus(status)]
