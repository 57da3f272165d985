"""Pydantic API schemas."""

from middleman_escrow.schemas.trade import (
    ApproveRequest,
    AssignmentRequest,
    AssignmentResponse,
    CreateTradeRequest,
    DeadlineEvaluationResponse,
    DeclineRequest,
    DeclineResponse,
    ErrorResponse,
    HealthResponse,
    HoldReceiptResponse,
    IssueResponse,
    JoinResponse,
    MiddlemanResponse,
    PaymentCallbackRequest,
    PaymentCallbackResponse,
    RegisterMiddlemanRequest,
    RejectRequest,
    ReportIssueRequest,
    SweepResponse,
    TradeEventResponse,
    TradeResponse,
    TradeStatusResponse,
)

__all__ = [
    "ApproveRequest",
    "AssignmentRequest",
    "AssignmentResponse",
    "CreateTradeRequest",
    "DeadlineEvaluationResponse",
    "DeclineRequest",
    "DeclineResponse",
    "ErrorResponse",
    "HealthResponse",
    "HoldReceiptResponse",
    "IssueResponse",
    "JoinResponse",
    "MiddlemanResponse",
    "PaymentCallbackRequest",
    "PaymentCallbackResponse",
    "RegisterMiddlemanRequest",
    "RejectRequest",
    "ReportIssueRequest",
    "SweepResponse",
    "TradeEventResponse",
    "TradeResponse",
    "TradeStatusResponse",
]
