"""Read-only projections of a trade for display.

Built from committed rows only; building a snapshot never calls the payment
processor and never writes.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime

from middleman_escrow.domain.enums import (
    ActorRole,
    AssignmentStatus,
    EscrowStatus,
    HoldRole,
    HoldStatus,
    SupervisionStatus,
    TradeAction,
    TradeStatus,
    Urgency,
)


@dataclass(frozen=True)
class HoldView:
    role: HoldRole
    status: HoldStatus
    amount_minor: int
    external_ref: str | None


@dataclass(frozen=True)
class AssignmentView:
    assignment_id: uuid.UUID
    middleman_id: str
    status: AssignmentStatus
    assigned_at: datetime
    estimated_response_minutes: int
    seconds_to_timeout: int | None = None


@dataclass(frozen=True)
class SupervisionView:
    middleman_id: str
    status: SupervisionStatus
    started_at: datetime
    seconds_elapsed: int
    seconds_remaining: int
    next_action: str
    decision: str | None = None


@dataclass(frozen=True)
class DeadlineView:
    payment_deadline: datetime
    is_expired: bool
    seconds_remaining: int
    time_remaining: str
    urgency: Urgency
    progress: float
    reason: str


@dataclass(frozen=True)
class TradeSnapshot:
    trade_id: uuid.UUID
    item_name: str
    description: str | None
    price_minor: int
    status: TradeStatus
    status_description: str
    progress_percentage: int
    creator_id: str
    participant_id: str | None
    creator_agreed: bool
    participant_agreed: bool
    created_at: datetime
    payment_deadline: datetime | None
    completed_at: datetime | None
    fees: dict[str, int]
    escrow_status: EscrowStatus
    holds: list[HoldView] = field(default_factory=list)
    assignment: AssignmentView | None = None
    supervision: SupervisionView | None = None
    deadline: DeadlineView | None = None
    next_statuses: list[TradeStatus] = field(default_factory=list)
    viewer_role: ActorRole = ActorRole.VIEWER
    allowed_actions: list[TradeAction] = field(default_factory=list)
    required_actions: list[str] = field(default_factory=list)
