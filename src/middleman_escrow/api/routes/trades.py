"""Trade REST API routes.

A thin adapter over TradeCoordinator: each handler is one coordinator call.
Failed Results are raised as OperationRejectedError and mapped to HTTP by
the error-handling middleware.

Routes:
    POST   /api/v1/trades                          — Create a trade
    GET    /api/v1/trades/{id}                     — Read projection for the caller
    GET    /api/v1/trades/{id}/events              — Audit trail
    POST   /api/v1/trades/{id}/join                — Join (social or binding)
    POST   /api/v1/trades/{id}/agree               — Agree to terms
    POST   /api/v1/trades/{id}/leave               — Participant leaves negotiation
    POST   /api/v1/trades/{id}/cancel              — Cancel before payment
    POST   /api/v1/trades/{id}/payments            — Open the caller's escrow hold
    POST   /api/v1/trades/{id}/deadline            — Evaluate the payment deadline
    POST   /api/v1/trades/{id}/assignment          — Request a middleman
    POST   /api/v1/trades/{id}/assignment/accept   — Middleman accepts
    POST   /api/v1/trades/{id}/assignment/decline  — Middleman declines
    POST   /api/v1/trades/{id}/approve             — Middleman approves (release)
    POST   /api/v1/trades/{id}/reject              — Middleman rejects (refund)
    POST   /api/v1/trades/{id}/issues              — Middleman reports an issue
    POST   /api/v1/payments/callback               — Processor notification
    POST   /api/v1/middlemen                       — Register a middleman
    POST   /api/v1/sweep                           — Run one enforcement pass
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from middleman_escrow.api.deps import get_actor_id, get_coordinator, get_optional_actor_id
from middleman_escrow.api.middleware import expect_ok
from middleman_escrow.logging_config import get_logger
from middleman_escrow.orchestration.coordinator import TradeCoordinator
from middleman_escrow.schemas.trade import (
    ApproveRequest,
    AssignmentRequest,
    AssignmentResponse,
    CreateTradeRequest,
    DeadlineEvaluationResponse,
    DeclineRequest,
    DeclineResponse,
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

router = APIRouter(prefix="/api/v1", tags=["Trades"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create & read
# ---------------------------------------------------------------------------


@router.post(
    "/trades",
    response_model=TradeResponse,
    status_code=201,
    summary="Create a trade",
)
async def create_trade(
    request: CreateTradeRequest,
    actor_id: str = Depends(get_actor_id),
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> TradeResponse:
    """List an item. The caller becomes the trade's creator."""
    snapshot = await coordinator.create_trade(
        creator_id=actor_id,
        item_name=request.item_name,
        price_minor=request.price_minor,
        description=request.description,
    )
    return TradeResponse.model_validate(snapshot)


@router.get(
    "/trades/{trade_id}",
    response_model=TradeResponse,
    summary="Get trade details",
)
async def get_trade(
    trade_id: uuid.UUID,
    viewer_id: str | None = Depends(get_optional_actor_id),
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> TradeResponse:
    snapshot = await coordinator.get_trade_snapshot(trade_id, viewer_id)
    return TradeResponse.model_validate(snapshot)


@router.get(
    "/trades/{trade_id}/events",
    response_model=list[TradeEventResponse],
    summary="Get audit trail",
)
async def get_trade_events(
    trade_id: uuid.UUID,
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> list[TradeEventResponse]:
    events = await coordinator.get_audit_trail(trade_id)
    return [TradeEventResponse.model_validate(e) for e in events]


# ---------------------------------------------------------------------------
# Negotiation
# ---------------------------------------------------------------------------


@router.post("/trades/{trade_id}/join", response_model=JoinResponse, summary="Join a trade")
async def join_trade(
    trade_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> JoinResponse:
    outcome = expect_ok(await coordinator.join_trade(trade_id, actor_id))
    return JoinResponse(trade_id=trade_id, status=outcome.status, bound=outcome.bound)


@router.post(
    "/trades/{trade_id}/agree", response_model=TradeStatusResponse, summary="Agree to terms"
)
async def agree_terms(
    trade_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> TradeStatusResponse:
    status = expect_ok(await coordinator.agree_terms(trade_id, actor_id))
    return TradeStatusResponse(trade_id=trade_id, status=status)


@router.post(
    "/trades/{trade_id}/leave", response_model=TradeStatusResponse, summary="Leave a trade"
)
async def leave_trade(
    trade_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> TradeStatusResponse:
    status = expect_ok(await coordinator.leave_trade(trade_id, actor_id))
    return TradeStatusResponse(trade_id=trade_id, status=status)


@router.post(
    "/trades/{trade_id}/cancel", response_model=TradeStatusResponse, summary="Cancel a trade"
)
async def cancel_trade(
    trade_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> TradeStatusResponse:
    status = expect_ok(await coordinator.cancel_trade(trade_id, actor_id))
    return TradeStatusResponse(trade_id=trade_id, status=status)


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------


@router.post(
    "/trades/{trade_id}/payments",
    response_model=HoldReceiptResponse,
    status_code=201,
    summary="Open the caller's escrow hold",
)
async def initiate_payment(
    trade_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> HoldReceiptResponse:
    receipt = expect_ok(await coordinator.initiate_payment(trade_id, actor_id))
    return HoldReceiptResponse.model_validate(receipt)


@router.post(
    "/payments/callback",
    response_model=PaymentCallbackResponse,
    summary="Processor notification for a hold",
)
async def payment_callback(
    request: PaymentCallbackRequest,
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> PaymentCallbackResponse:
    """Signature verification is the processor integration's job, upstream of this route."""
    status = expect_ok(
        await coordinator.confirm_payment_callback(
            request.external_ref, request.outcome, request.amount_captured
        )
    )
    return PaymentCallbackResponse(external_ref=request.external_ref, status=status)


@router.post(
    "/trades/{trade_id}/deadline",
    response_model=DeadlineEvaluationResponse,
    summary="Evaluate the payment deadline",
)
async def evaluate_deadline(
    trade_id: uuid.UUID,
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> DeadlineEvaluationResponse:
    evaluation = expect_ok(await coordinator.evaluate_deadline(trade_id))
    return DeadlineEvaluationResponse.model_validate(evaluation)


# ---------------------------------------------------------------------------
# Middleman assignment & supervision
# ---------------------------------------------------------------------------


@router.post(
    "/trades/{trade_id}/assignment",
    response_model=AssignmentResponse,
    status_code=201,
    summary="Request a middleman",
)
async def request_assignment(
    trade_id: uuid.UUID,
    request: AssignmentRequest | None = None,
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> AssignmentResponse:
    exclude = request.exclude if request is not None else []
    view = expect_ok(await coordinator.request_middleman_assignment(trade_id, exclude=exclude))
    return AssignmentResponse.model_validate(view)


@router.post(
    "/trades/{trade_id}/assignment/accept",
    response_model=TradeStatusResponse,
    summary="Middleman accepts the assignment",
)
async def accept_assignment(
    trade_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> TradeStatusResponse:
    status = expect_ok(await coordinator.accept_assignment(trade_id, actor_id))
    return TradeStatusResponse(trade_id=trade_id, status=status)


@router.post(
    "/trades/{trade_id}/assignment/decline",
    response_model=DeclineResponse,
    summary="Middleman declines the assignment",
)
async def decline_assignment(
    trade_id: uuid.UUID,
    request: DeclineRequest | None = None,
    actor_id: str = Depends(get_actor_id),
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> DeclineResponse:
    reason = request.reason if request is not None else None
    outcome = expect_ok(await coordinator.decline_assignment(trade_id, actor_id, reason))
    return DeclineResponse.model_validate(outcome)


@router.post(
    "/trades/{trade_id}/approve",
    response_model=TradeStatusResponse,
    summary="Middleman approves; escrow is released",
)
async def approve_trade(
    trade_id: uuid.UUID,
    request: ApproveRequest | None = None,
    actor_id: str = Depends(get_actor_id),
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> TradeStatusResponse:
    notes = request.notes if request is not None else None
    status = expect_ok(await coordinator.approve_trade(trade_id, actor_id, notes))
    return TradeStatusResponse(trade_id=trade_id, status=status)


@router.post(
    "/trades/{trade_id}/reject",
    response_model=TradeStatusResponse,
    summary="Middleman rejects; both holds are refunded",
)
async def reject_trade(
    trade_id: uuid.UUID,
    request: RejectRequest,
    actor_id: str = Depends(get_actor_id),
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> TradeStatusResponse:
    status = expect_ok(await coordinator.reject_trade(trade_id, actor_id, request.reason))
    return TradeStatusResponse(trade_id=trade_id, status=status)


@router.post(
    "/trades/{trade_id}/issues",
    response_model=IssueResponse,
    status_code=201,
    summary="Report an issue during supervision",
)
async def report_issue(
    trade_id: uuid.UUID,
    request: ReportIssueRequest,
    actor_id: str = Depends(get_actor_id),
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> IssueResponse:
    outcome = expect_ok(
        await coordinator.report_issue(
            trade_id, actor_id, request.issue_type, request.description
        )
    )
    return IssueResponse.model_validate(outcome)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@router.post(
    "/middlemen",
    response_model=MiddlemanResponse,
    status_code=201,
    summary="Register a middleman",
)
async def register_middleman(
    request: RegisterMiddlemanRequest,
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> MiddlemanResponse:
    middleman = await coordinator.register_middleman(
        request.middleman_id,
        request.display_name,
        available=request.available,
        average_response_time_minutes=request.average_response_time_minutes,
        rating=request.rating,
    )
    return MiddlemanResponse.model_validate(middleman)


@router.post("/sweep", response_model=SweepResponse, summary="Run one enforcement pass")
async def run_sweep(
    coordinator: TradeCoordinator = Depends(get_coordinator),
) -> SweepResponse:
    report = await coordinator.sweep()
    logger.info("sweep.triggered_via_api", errors=report.errors)
    return SweepResponse.model_validate(report)
