"""Pydantic schemas for the trade API.

Responses are built from the coordinator's result dataclasses and ORM rows
with ``from_attributes``; the HTTP layer never reaches into the database.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from middleman_escrow.domain.enums import (
    ActorRole,
    AssignmentStatus,
    EnforcementActionType,
    EscrowStatus,
    HoldRole,
    HoldStatus,
    IssueType,
    ProcessorOutcome,
    SupervisionStatus,
    TradeAction,
    TradeStatus,
    Urgency,
)

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateTradeRequest(BaseModel):
    """Request body for listing an item for trade."""

    item_name: str = Field(..., min_length=1, max_length=200, examples=["Vintage guitar"])
    price_minor: int = Field(
        ...,
        gt=0,
        description="Price in minor currency units (cents)",
        examples=[10000],
    )
    description: str | None = Field(default=None, max_length=5000)


class PaymentCallbackRequest(BaseModel):
    """Processor notification for one hold."""

    external_ref: str = Field(..., min_length=1, max_length=120)
    outcome: ProcessorOutcome
    amount_captured: int | None = Field(default=None, ge=0)


class AssignmentRequest(BaseModel):
    exclude: list[str] = Field(default_factory=list)


class DeclineRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class ApproveRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class ReportIssueRequest(BaseModel):
    issue_type: IssueType
    description: str = Field(..., min_length=1, max_length=2000)


class RegisterMiddlemanRequest(BaseModel):
    middleman_id: str = Field(..., min_length=1, max_length=64)
    display_name: str = Field(..., min_length=1, max_length=100)
    available: bool = True
    average_response_time_minutes: float = Field(default=5.0, ge=0)
    rating: float = Field(default=5.0, ge=0, le=5)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class HoldResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    role: HoldRole
    status: HoldStatus
    amount_minor: int
    external_ref: str | None


class AssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    assignment_id: uuid.UUID
    middleman_id: str
    status: AssignmentStatus
    assigned_at: datetime
    estimated_response_minutes: int
    seconds_to_timeout: int | None = None


class SupervisionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    middleman_id: str
    status: SupervisionStatus
    started_at: datetime
    seconds_elapsed: int
    seconds_remaining: int
    next_action: str
    decision: str | None = None


class DeadlineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_deadline: datetime
    is_expired: bool
    seconds_remaining: int
    time_remaining: str
    urgency: Urgency
    progress: float
    reason: str


class TradeResponse(BaseModel):
    """Full read projection of a trade, as seen by one viewer."""

    model_config = ConfigDict(from_attributes=True)

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
    holds: list[HoldResponse]
    assignment: AssignmentResponse | None
    supervision: SupervisionResponse | None
    deadline: DeadlineResponse | None
    next_statuses: list[TradeStatus]
    viewer_role: ActorRole
    allowed_actions: list[TradeAction]
    required_actions: list[str]


class TradeStatusResponse(BaseModel):
    """Lightweight response for operations that only move the status."""

    trade_id: uuid.UUID
    status: TradeStatus


class JoinResponse(TradeStatusResponse):
    bound: bool = Field(description="False for a chat-only join during negotiation")


class PaymentCallbackResponse(BaseModel):
    external_ref: str
    status: TradeStatus


class FeesResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subtotal: int
    platform_fee: int
    processor_fee: int
    total: int


class HoldReceiptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    hold_id: uuid.UUID
    role: HoldRole
    external_ref: str
    amount_due: int
    fees: FeesResponse


class DeadlineEvaluationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: EnforcementActionType
    urgency: Urgency
    status: TradeStatus
    message: str


class DeclineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    declined_by: str
    reassigned_to: str | None
    reassign_error: str | None = None


class IssueResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    issue_id: uuid.UUID
    escalated: bool
    status: TradeStatus


class TradeEventResponse(BaseModel):
    """Response schema for an audit record."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    trade_id: uuid.UUID
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class MiddlemanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    display_name: str
    available: bool
    average_response_time_minutes: float
    rating: float


class SweepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    deadlines_evaluated: int
    trades_refunded: int
    trades_cancelled: int
    assignments_expired: int
    assignments_requested: int
    supervisions_escalated: int
    errors: int


class ErrorResponse(BaseModel):
    error: str
    message: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
