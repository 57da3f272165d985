"""Domain layer — pure business logic with zero framework dependencies."""

from middleman_escrow.domain.enums import (
    AssignmentStatus,
    EscrowStatus,
    EventType,
    HoldRole,
    HoldStatus,
    SupervisionStatus,
    TradeStatus,
)
from middleman_escrow.domain.exceptions import (
    EscrowCoreError,
    HoldNotFoundError,
    PaymentProcessorError,
    TradeNotFoundError,
)
from middleman_escrow.domain.results import ErrorCode, Result
from middleman_escrow.domain.state_machine import (
    TradeLifecycleMachine,
    TransitionContext,
    can_transition,
    validate_transition,
)

__all__ = [
    "AssignmentStatus",
    "EscrowStatus",
    "EventType",
    "HoldRole",
    "HoldStatus",
    "SupervisionStatus",
    "TradeStatus",
    "EscrowCoreError",
    "HoldNotFoundError",
    "PaymentProcessorError",
    "TradeNotFoundError",
    "ErrorCode",
    "Result",
    "TradeLifecycleMachine",
    "TransitionContext",
    "can_transition",
    "validate_transition",
]
