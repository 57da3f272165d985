"""TradeCoordinator — the operations the escrow core exposes.

Every public coroutine is one unit of work:

    1. take the in-process lock for the trade
    2. open a session, build the components on it
    3. run the operation (components only flush)
    4. commit, or roll back on exception / explicit compensation
    5. deliver buffered events, only after a successful commit

The lock serialises callers inside one process. Across processes the
compare-and-swap updates in the repositories decide who wins, and the
loser gets STATE_CONFLICT.

Follow-up work that belongs to a different unit of work (reassigning a
middleman after a decline or timeout, requesting an assignment once both
holds verify) runs after the first unit of work has committed.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from middleman_escrow.domain.deadlines import (
    DEFAULT_POLICY as DEFAULT_DEADLINE_POLICY,
)
from middleman_escrow.domain.deadlines import (
    DeadlineContext,
    DeadlinePolicy,
    check_status,
    enforcement_action,
    format_time_remaining,
    notification_strategy,
    progress,
    urgency_level,
)
from middleman_escrow.domain.dispatch import DEFAULT_POLICY as DEFAULT_DISPATCH_POLICY
from middleman_escrow.domain.dispatch import DispatchPolicy, check_assignment_timeout
from middleman_escrow.domain.enums import (
    AssignmentStatus,
    EnforcementActionType,
    EventType,
    HoldRole,
    HoldStatus,
    IssueType,
    ProcessorOutcome,
    SupervisionStatus,
    TradeAction,
    TradeStatus,
    Urgency,
)
from middleman_escrow.domain.exceptions import (
    EscrowCoreError,
    EscrowInvariantError,
    HoldNotFoundError,
)
from middleman_escrow.domain.fees import FeeSchedule
from middleman_escrow.domain.permissions import allowed_actions, required_actions, resolve_role
from middleman_escrow.domain.results import ErrorCode, Result
from middleman_escrow.domain.state_machine import (
    next_statuses,
    progress_percentage,
    status_description,
)
from middleman_escrow.domain.timeutils import utcnow
from middleman_escrow.infrastructure.database.orm_models import Middleman
from middleman_escrow.infrastructure.database.repositories import (
    EventRepository,
    HoldRepository,
    MiddlemanRepository,
)
from middleman_escrow.logging_config import get_logger, trade_log_context
from middleman_escrow.orchestration.snapshots import (
    AssignmentView,
    DeadlineView,
    HoldView,
    SupervisionView,
    TradeSnapshot,
)
from middleman_escrow.services.escrow_ledger import EscrowLedger, HoldReceipt
from middleman_escrow.services.events import EventPublisher, EventSink, LoggingEventSink
from middleman_escrow.services.middleman_dispatcher import MiddlemanDispatcher
from middleman_escrow.services.trade_lifecycle import JoinOutcome, TradeLifecycle

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from middleman_escrow.config import Settings
    from middleman_escrow.infrastructure.database.orm_models import (
        MiddlemanAssignment,
        Trade,
        TradeEvent,
    )
    from middleman_escrow.services.payment_processor import PaymentProcessor
    from middleman_escrow.services.roster import MiddlemanRoster

logger = get_logger(__name__)

# Per-trade faults the sweep logs and steps over.
SWEEP_FAULTS = (EscrowCoreError, SQLAlchemyError)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeadlineEvaluation:
    action: EnforcementActionType
    urgency: Urgency
    status: TradeStatus
    message: str


@dataclass(frozen=True)
class DeclineOutcome:
    declined_by: str
    reassigned_to: str | None
    reassign_error: ErrorCode | None = None


@dataclass(frozen=True)
class IssueOutcome:
    issue_id: uuid.UUID
    escalated: bool
    status: TradeStatus


@dataclass
class SweepReport:
    deadlines_evaluated: int = 0
    trades_refunded: int = 0
    trades_cancelled: int = 0
    assignments_expired: int = 0
    assignments_requested: int = 0
    supervisions_escalated: int = 0
    errors: int = 0


@dataclass
class _UnitOfWork:
    session: AsyncSession
    publisher: EventPublisher
    lifecycle: TradeLifecycle
    ledger: EscrowLedger
    dispatcher: MiddlemanDispatcher

    async def rollback(self) -> None:
        """Undo everything done so far; the commit at exit then commits nothing."""
        await self.session.rollback()
        self.publisher.discard()


class TradeCoordinator:
    """Facade over TradeLifecycle, EscrowLedger, the deadline tracker and the dispatcher."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        processor: PaymentProcessor,
        roster: MiddlemanRoster,
        sink: EventSink | None = None,
        deadline_policy: DeadlinePolicy = DEFAULT_DEADLINE_POLICY,
        fee_schedule: FeeSchedule | None = None,
        dispatch_policy: DispatchPolicy = DEFAULT_DISPATCH_POLICY,
    ) -> None:
        self._session_factory = session_factory
        self._processor = processor
        self._roster = roster
        self._sink = sink or LoggingEventSink()
        self._deadline_policy = deadline_policy
        self._fee_schedule = fee_schedule or FeeSchedule()
        self._dispatch_policy = dispatch_policy
        self._locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        *,
        processor: PaymentProcessor,
        roster: MiddlemanRoster,
        sink: EventSink | None = None,
    ) -> TradeCoordinator:
        return cls(
            session_factory,
            processor=processor,
            roster=roster,
            sink=sink,
            deadline_policy=DeadlinePolicy.from_settings(settings),
            fee_schedule=FeeSchedule.from_settings(settings),
            dispatch_policy=DispatchPolicy.from_settings(settings),
        )

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _lock_for(self, trade_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(trade_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[trade_id] = lock
        return lock

    def _build(self, session: AsyncSession) -> _UnitOfWork:
        publisher = EventPublisher(self._sink)
        return _UnitOfWork(
            session=session,
            publisher=publisher,
            lifecycle=TradeLifecycle(session, publisher, self._deadline_policy),
            ledger=EscrowLedger(session, self._processor, publisher, self._fee_schedule),
            dispatcher=MiddlemanDispatcher(session, self._roster, publisher, self._dispatch_policy),
        )

    @asynccontextmanager
    async def _unit_of_work(self, trade_id: uuid.UUID | None = None) -> AsyncIterator[_UnitOfWork]:
        lock = self._lock_for(trade_id) if trade_id is not None else None
        if lock is not None:
            await lock.acquire()
        try:
            with trade_log_context(trade_id):
                async with self._session_factory() as session:
                    uow = self._build(session)
                    try:
                        yield uow
                        await session.commit()
                    except Exception:
                        await session.rollback()
                        uow.publisher.discard()
                        raise
                await uow.publisher.flush()
        finally:
            if lock is not None:
                lock.release()

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def create_trade(
        self,
        *,
        creator_id: str,
        item_name: str,
        price_minor: int,
        description: str | None = None,
        now: datetime | None = None,
    ) -> TradeSnapshot:
        """Create a trade. Raises ValueError for a non-positive price."""
        async with self._unit_of_work() as uow:
            trade = await uow.lifecycle.create_trade(
                creator_id=creator_id,
                item_name=item_name,
                price_minor=price_minor,
                description=description,
            )
            return await self._snapshot(uow, trade, now or utcnow(), creator_id)

    async def join_trade(
        self, trade_id: uuid.UUID, actor_id: str, now: datetime | None = None
    ) -> Result[JoinOutcome]:
        async with self._unit_of_work(trade_id) as uow:
            trade = await uow.lifecycle.get(trade_id)
            return await uow.lifecycle.join(trade, actor_id, now)

    async def agree_terms(
        self, trade_id: uuid.UUID, actor_id: str, now: datetime | None = None
    ) -> Result[TradeStatus]:
        async with self._unit_of_work(trade_id) as uow:
            trade = await uow.lifecycle.get(trade_id)
            return await uow.lifecycle.agree_terms(trade, actor_id, now)

    async def leave_trade(
        self, trade_id: uuid.UUID, actor_id: str, now: datetime | None = None
    ) -> Result[TradeStatus]:
        async with self._unit_of_work(trade_id) as uow:
            trade = await uow.lifecycle.get(trade_id)
            return await uow.lifecycle.leave(trade, actor_id, now)

    async def cancel_trade(
        self, trade_id: uuid.UUID, actor_id: str, now: datetime | None = None
    ) -> Result[TradeStatus]:
        async with self._unit_of_work(trade_id) as uow:
            trade = await uow.lifecycle.get(trade_id)
            return await uow.lifecycle.cancel(trade, actor_id, now)

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    async def _settle_payments(self, uow: _UnitOfWork, trade: Trade, now: datetime) -> bool:
        """PAYMENT_PENDING -> PAYMENT_COMPLETE once both holds verify. Idempotent."""
        if TradeStatus(trade.status) != TradeStatus.PAYMENT_PENDING:
            return False
        verification = await uow.ledger.verify_both_holds(trade)
        if not verification.both_paid:
            return False
        result = await uow.lifecycle.transition(
            trade,
            TradeStatus.PAYMENT_COMPLETE,
            context=uow.lifecycle.context(trade, both_paid=True),
            now=now,
            metadata={"total_held": verification.total_held},
        )
        return result.ok

    async def initiate_payment(
        self, trade_id: uuid.UUID, actor_id: str, now: datetime | None = None
    ) -> Result[HoldReceipt]:
        """Open the actor's hold. The actor's role decides which hold."""
        now = now or utcnow()
        settled = False
        async with self._unit_of_work(trade_id) as uow:
            trade = await uow.lifecycle.get(trade_id)
            permission = uow.lifecycle.authorize(trade, actor_id, TradeAction.PAY)
            if not permission.ok:
                return Result.failure(permission.error, permission.reason)

            check = check_status(
                now, DeadlineContext(trade.payment_deadline), self._deadline_policy
            )
            if check.is_expired:
                return Result.failure(check.classification, "Payment deadline has passed")

            receipt = await uow.ledger.create_hold(trade, HoldRole(permission.unwrap().value), actor_id)
            if not receipt.ok:
                return receipt
            settled = await self._settle_payments(uow, trade, now)

        if settled:
            await self._auto_assign(trade_id, now)
        return receipt

    async def _trade_id_for_hold(self, external_ref: str) -> uuid.UUID:
        async with self._session_factory() as session:
            hold = await HoldRepository(session).get_by_external_ref(external_ref)
            if hold is None:
                raise HoldNotFoundError(external_ref)
            return hold.trade_id

    async def confirm_payment_callback(
        self,
        external_ref: str,
        outcome: ProcessorOutcome,
        amount_captured: int | None = None,
        now: datetime | None = None,
    ) -> Result[TradeStatus]:
        """Apply a processor notification and advance the trade if both holds verify.

        A repeated success callback is a no-op. A capture that arrives after
        the trade was closed is refunded straight away.

        Raises:
            HoldNotFoundError: If no hold carries ``external_ref``.
        """
        now = now or utcnow()
        outcome = ProcessorOutcome(outcome)
        trade_id = await self._trade_id_for_hold(external_ref)
        settled = False

        async with self._unit_of_work(trade_id) as uow:
            applied = await uow.ledger.apply_processor_outcome(
                external_ref, outcome, amount_captured, now
            )
            if not applied.ok:
                return Result.failure(applied.error, applied.reason)

            trade = await uow.lifecycle.get(trade_id)
            status = TradeStatus(trade.status)
            if status == TradeStatus.PAYMENT_PENDING and outcome == ProcessorOutcome.SUCCEEDED:
                settled = await self._settle_payments(uow, trade, now)
            elif status in (TradeStatus.CANCELLED, TradeStatus.REFUNDED) and (
                applied.unwrap().status == HoldStatus.HELD.value
            ):
                await uow.ledger.refund(trade, reason="payment_after_close", now=now)
            status = TradeStatus(trade.status)

        if settled:
            await self._auto_assign(trade_id, now)
        return Result.success(status)

    # ------------------------------------------------------------------
    # Deadline enforcement
    # ------------------------------------------------------------------

    async def evaluate_deadline(
        self, trade_id: uuid.UUID, now: datetime | None = None
    ) -> Result[DeadlineEvaluation]:
        """Enforce the payment deadline of one trade. Safe to call at any cadence.

        Holds are re-verified right before deciding, so a payment that landed
        in the meantime wins over a refund that has not executed yet.
        """
        now = now or utcnow()
        settled = False

        async with self._unit_of_work(trade_id) as uow:
            trade = await uow.lifecycle.get(trade_id)
            if TradeStatus(trade.status) != TradeStatus.PAYMENT_PENDING:
                return Result.success(
                    DeadlineEvaluation(
                        action=EnforcementActionType.NONE,
                        urgency=Urgency.LOW,
                        status=TradeStatus(trade.status),
                        message="No payment deadline in effect",
                    )
                )

            verification = await uow.ledger.verify_both_holds(trade)
            context = DeadlineContext(
                payment_deadline=trade.payment_deadline,
                creator_paid=verification.creator_paid,
                participant_paid=verification.participant_paid,
            )
            decision = enforcement_action(now, context, self._deadline_policy)

            if verification.both_paid:
                settled = await self._settle_payments(uow, trade, now)
            elif decision.action == EnforcementActionType.WARNING:
                remaining = check_status(now, context, self._deadline_policy).time_remaining
                strategy = notification_strategy(remaining, self._deadline_policy)
                uow.publisher.emit(
                    EventType.PAYMENT_DEADLINE_WARNING,
                    trade_id,
                    urgency=decision.urgency.value,
                    minutes_remaining=decision.minutes_remaining,
                    message=decision.message,
                    channels=[c.value for c in strategy.channels],
                    priority=strategy.priority.value,
                )
            elif decision.action in (EnforcementActionType.REFUND, EnforcementActionType.CANCEL):
                target = (
                    TradeStatus.REFUNDED
                    if decision.action == EnforcementActionType.REFUND
                    else TradeStatus.CANCELLED
                )
                moved = await uow.lifecycle.transition(
                    trade,
                    target,
                    actor="deadline_tracker",
                    now=now,
                    metadata={"reason": decision.message},
                )
                if not moved.ok:
                    return Result.failure(moved.error, moved.reason)
                await uow.ledger.refund(trade, reason="payment_deadline", now=now)
                logger.info(
                    "deadline.enforced",
                    trade_id=str(trade_id),
                    action=decision.action.value,
                    creator_paid=verification.creator_paid,
                    participant_paid=verification.participant_paid,
                )

            evaluation = DeadlineEvaluation(
                action=decision.action,
                urgency=decision.urgency,
                status=TradeStatus(trade.status),
                message=decision.message,
            )

        if settled:
            await self._auto_assign(trade_id, now)
        return Result.success(evaluation)

    # ------------------------------------------------------------------
    # Middleman assignment
    # ------------------------------------------------------------------

    def _assignment_view(self, assignment: MiddlemanAssignment, now: datetime) -> AssignmentView:
        seconds = None
        if assignment.status == AssignmentStatus.PENDING.value:
            check = check_assignment_timeout(assignment.assigned_at, now, self._dispatch_policy)
            seconds = int(check.time_remaining.total_seconds())
        return AssignmentView(
            assignment_id=assignment.id,
            middleman_id=assignment.middleman_id,
            status=AssignmentStatus(assignment.status),
            assigned_at=assignment.assigned_at,
            estimated_response_minutes=assignment.estimated_response_minutes,
            seconds_to_timeout=seconds,
        )

    async def request_middleman_assignment(
        self,
        trade_id: uuid.UUID,
        *,
        exclude: Iterable[str] = (),
        now: datetime | None = None,
    ) -> Result[AssignmentView]:
        """Offer a PAYMENT_COMPLETE trade to the best available middleman.

        NO_AVAILABLE_MIDDLEMAN is returned to the caller; nothing retries here.
        The sweeper asks again on its next pass.
        """
        now = now or utcnow()
        async with self._unit_of_work(trade_id) as uow:
            trade = await uow.lifecycle.get(trade_id)
            requested = await uow.dispatcher.request_assignment(trade, exclude=exclude, now=now)
            if not requested.ok:
                return Result.failure(requested.error, requested.reason)
            return Result.success(self._assignment_view(requested.unwrap(), now))

    async def _auto_assign(self, trade_id: uuid.UUID, now: datetime) -> Result[AssignmentView]:
        result = await self.request_middleman_assignment(trade_id, now=now)
        if not result.ok:
            logger.info(
                "coordinator.assignment_deferred",
                trade_id=str(trade_id),
                error=str(result.error),
                reason=result.reason,
            )
        return result

    async def accept_assignment(
        self, trade_id: uuid.UUID, middleman_id: str, now: datetime | None = None
    ) -> Result[TradeStatus]:
        """Accept an offer and start supervision (PAYMENT_COMPLETE -> IN_PROGRESS).

        An offer accepted too late is expired, the trade is offered to
        someone else, and the caller gets ASSIGNMENT_TIMEOUT.
        """
        now = now or utcnow()
        async with self._unit_of_work(trade_id) as uow:
            trade = await uow.lifecycle.get(trade_id)
            accepted = await uow.dispatcher.accept(trade, middleman_id, now)
            if accepted.ok:
                started = await uow.lifecycle.transition(
                    trade,
                    TradeStatus.IN_PROGRESS,
                    context=uow.lifecycle.context(trade, has_accepted_assignment=True),
                    actor=middleman_id,
                    now=now,
                )
                if not started.ok:
                    await uow.rollback()
                return started

        if accepted.error == ErrorCode.ASSIGNMENT_TIMEOUT:
            await self._auto_assign(trade_id, now)
        return Result.failure(accepted.error, accepted.reason)

    async def decline_assignment(
        self,
        trade_id: uuid.UUID,
        middleman_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Result[DeclineOutcome]:
        """Decline an offer; the trade is immediately offered to someone else."""
        now = now or utcnow()
        async with self._unit_of_work(trade_id) as uow:
            trade = await uow.lifecycle.get(trade_id)
            declined = await uow.dispatcher.decline(trade, middleman_id, reason, now)
            if not declined.ok:
                return Result.failure(declined.error, declined.reason)

        reassigned = await self._auto_assign(trade_id, now)
        return Result.success(
            DeclineOutcome(
                declined_by=middleman_id,
                reassigned_to=reassigned.unwrap().middleman_id if reassigned.ok else None,
                reassign_error=reassigned.error,
            )
        )

    async def expire_assignment(self, trade_id: uuid.UUID, now: datetime | None = None) -> bool:
        """Time out the trade's pending offer if its window has passed, then reassign."""
        now = now or utcnow()
        async with self._unit_of_work(trade_id) as uow:
            assignment = await uow.dispatcher.live_assignment(trade_id)
            if assignment is None or assignment.status != AssignmentStatus.PENDING.value:
                return False
            if not uow.dispatcher.check_timeout(assignment, now).is_timed_out:
                return False
            expired = await uow.dispatcher.expire(assignment, now)

        if expired:
            await self._auto_assign(trade_id, now)
        return expired

    # ------------------------------------------------------------------
    # Supervision decisions
    # ------------------------------------------------------------------

    async def _cancel_and_refund(
        self,
        uow: _UnitOfWork,
        trade: Trade,
        actor: str,
        reason: str,
        now: datetime,
    ) -> Result[TradeStatus]:
        cancelled = await uow.lifecycle.transition(
            trade,
            TradeStatus.CANCELLED,
            actor=actor,
            now=now,
            metadata={"reason": reason},
        )
        if not cancelled.ok:
            return cancelled
        await uow.ledger.refund(trade, reason=reason, now=now)
        return cancelled

    async def approve_trade(
        self,
        trade_id: uuid.UUID,
        middleman_id: str,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Result[TradeStatus]:
        """Middleman approval: COMPLETED, then release.

        The trade is claimed as COMPLETED before any money moves. If the
        ledger then refuses the release, the whole unit of work is rolled
        back and EscrowInvariantError propagates.
        """
        now = now or utcnow()
        async with self._unit_of_work(trade_id) as uow:
            trade = await uow.lifecycle.get(trade_id)
            approved = await uow.dispatcher.approve(trade, middleman_id, notes, now)
            if not approved.ok:
                return Result.failure(approved.error, approved.reason)

            verification = await uow.ledger.verify_both_holds(trade)
            if not verification.both_paid:
                await uow.rollback()
                return Result.failure(
                    ErrorCode.REQUIREMENT_NOT_MET,
                    "Both payments must be completed before release",
                )

            completed = await uow.lifecycle.transition(
                trade,
                TradeStatus.COMPLETED,
                context=uow.lifecycle.context(trade, middleman_approved=True),
                actor=middleman_id,
                now=now,
                metadata={"notes": notes} if notes else None,
            )
            if not completed.ok:
                await uow.rollback()
                return completed

            released = await uow.ledger.release(trade, now)
            if not released.ok:
                raise EscrowInvariantError(
                    f"Trade {trade_id} was completed but the release was refused: {released.reason}"
                )
            return completed

    async def reject_trade(
        self,
        trade_id: uuid.UUID,
        middleman_id: str,
        reason: str,
        now: datetime | None = None,
    ) -> Result[TradeStatus]:
        """Middleman rejection: CANCELLED and both holds refunded, never released."""
        now = now or utcnow()
        async with self._unit_of_work(trade_id) as uow:
            trade = await uow.lifecycle.get(trade_id)
            rejected = await uow.dispatcher.reject(trade, middleman_id, reason, now)
            if not rejected.ok:
                return Result.failure(rejected.error, rejected.reason)
            cancelled = await self._cancel_and_refund(uow, trade, middleman_id, reason, now)
            if not cancelled.ok:
                await uow.rollback()
            return cancelled

    async def report_issue(
        self,
        trade_id: uuid.UUID,
        middleman_id: str,
        issue_type: IssueType,
        description: str,
        now: datetime | None = None,
    ) -> Result[IssueOutcome]:
        """Record an issue; scam attempts and item mismatches cancel and refund."""
        now = now or utcnow()
        async with self._unit_of_work(trade_id) as uow:
            trade = await uow.lifecycle.get(trade_id)
            reported = await uow.dispatcher.report_issue(
                trade, middleman_id, IssueType(issue_type), description, now
            )
            if not reported.ok:
                return Result.failure(reported.error, reported.reason)
            issue = reported.unwrap()

            if issue.escalated:
                cancelled = await self._cancel_and_refund(
                    uow, trade, middleman_id, f"issue:{issue.issue_type}", now
                )
                if not cancelled.ok:
                    await uow.rollback()
                    return Result.failure(cancelled.error, cancelled.reason)

            return Result.success(
                IssueOutcome(
                    issue_id=issue.id,
                    escalated=issue.escalated,
                    status=TradeStatus(trade.status),
                )
            )

    async def evaluate_supervision(
        self, trade_id: uuid.UUID, now: datetime | None = None
    ) -> SupervisionStatus | None:
        """Persist the supervision window's classification; escalates on timeout."""
        now = now or utcnow()
        async with self._unit_of_work(trade_id) as uow:
            supervision = await uow.dispatcher.latest_session(trade_id)
            if supervision is None:
                return None
            return await uow.dispatcher.evaluate_supervision(supervision, now)

    # ------------------------------------------------------------------
    # Read projection
    # ------------------------------------------------------------------

    async def get_trade_snapshot(
        self,
        trade_id: uuid.UUID,
        viewer_id: str | None = None,
        now: datetime | None = None,
    ) -> TradeSnapshot:
        async with self._session_factory() as session:
            uow = self._build(session)
            trade = await uow.lifecycle.get(trade_id)
            return await self._snapshot(uow, trade, now or utcnow(), viewer_id)

    async def get_audit_trail(self, trade_id: uuid.UUID) -> list[TradeEvent]:
        """Every recorded status change of the trade, oldest first."""
        async with self._session_factory() as session:
            await self._build(session).lifecycle.get(trade_id)
            return await EventRepository(session).list_for_trade(trade_id)

    async def register_middleman(
        self,
        middleman_id: str,
        display_name: str,
        *,
        available: bool = True,
        average_response_time_minutes: float = 5.0,
        rating: float = 5.0,
    ) -> Middleman:
        """Add a reviewer to the roster read by ``DatabaseRoster``."""
        async with self._session_factory() as session:
            middleman = await MiddlemanRepository(session).add(
                Middleman(
                    id=middleman_id,
                    display_name=display_name,
                    available=available,
                    average_response_time_minutes=average_response_time_minutes,
                    rating=rating,
                )
            )
            await session.commit()
        logger.info("middleman.registered", middleman_id=middleman_id)
        return middleman

    async def _snapshot(
        self,
        uow: _UnitOfWork,
        trade: Trade,
        now: datetime,
        viewer_id: str | None,
    ) -> TradeSnapshot:
        status = TradeStatus(trade.status)
        holds = await uow.ledger.holds(trade.id)
        assignment = await uow.dispatcher.live_assignment(trade.id)
        supervision = await uow.dispatcher.latest_session(trade.id)

        middleman_id = None
        if supervision is not None:
            middleman_id = supervision.middleman_id
        elif assignment is not None:
            middleman_id = assignment.middleman_id
        role = resolve_role(viewer_id, trade.creator_id, trade.participant_id, middleman_id)

        deadline_view = None
        if status == TradeStatus.PAYMENT_PENDING and trade.payment_deadline is not None:
            held = {h.role for h in holds if h.status == HoldStatus.HELD.value}
            context = DeadlineContext(
                payment_deadline=trade.payment_deadline,
                creator_paid=HoldRole.CREATOR.value in held,
                participant_paid=HoldRole.PARTICIPANT.value in held,
            )
            check = check_status(now, context, self._deadline_policy)
            deadline_view = DeadlineView(
                payment_deadline=trade.payment_deadline,
                is_expired=check.is_expired,
                seconds_remaining=int(check.time_remaining.total_seconds()),
                time_remaining=format_time_remaining(check.time_remaining),
                urgency=urgency_level(check.time_remaining),
                progress=progress(now, context, self._deadline_policy),
                reason=check.reason,
            )

        supervision_view = None
        if supervision is not None:
            report = uow.dispatcher.report(supervision, now)
            supervision_view = SupervisionView(
                middleman_id=supervision.middleman_id,
                status=report.status,
                started_at=supervision.started_at,
                seconds_elapsed=int(report.time_elapsed.total_seconds()),
                seconds_remaining=int(report.time_remaining.total_seconds()),
                next_action=report.next_action,
                decision=supervision.decision,
            )

        return TradeSnapshot(
            trade_id=trade.id,
            item_name=trade.item_name,
            description=trade.description,
            price_minor=trade.price_minor,
            status=status,
            status_description=status_description(status),
            progress_percentage=progress_percentage(status),
            creator_id=trade.creator_id,
            participant_id=trade.participant_id,
            creator_agreed=trade.creator_agreed,
            participant_agreed=trade.participant_agreed,
            created_at=trade.created_at,
            payment_deadline=trade.payment_deadline,
            completed_at=trade.completed_at,
            fees=uow.ledger.fees_for(trade).to_dict(),
            escrow_status=await uow.ledger.status(trade.id),
            holds=[
                HoldView(
                    role=HoldRole(h.role),
                    status=HoldStatus(h.status),
                    amount_minor=h.amount_minor,
                    external_ref=h.external_ref,
                )
                for h in holds
            ],
            assignment=self._assignment_view(assignment, now) if assignment else None,
            supervision=supervision_view,
            deadline=deadline_view,
            next_statuses=next_statuses(status),
            viewer_role=role,
            allowed_actions=allowed_actions(status, role),
            required_actions=required_actions(status, role),
        )

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        """One pass over everything time can affect.

        Deadlines of PAYMENT_PENDING trades, timeouts of pending offers,
        supervision windows, and PAYMENT_COMPLETE trades still waiting for a
        middleman. A fault on one trade is logged and the pass continues.
        """
        now = now or utcnow()
        report = SweepReport()

        async with self._session_factory() as session:
            uow = self._build(session)
            pending_trades = [t.id for t in await uow.lifecycle.list_by_status(TradeStatus.PAYMENT_PENDING)]
            unassigned = [
                t.id
                for t in await uow.lifecycle.list_by_status(TradeStatus.PAYMENT_COMPLETE)
                if await uow.dispatcher.live_assignment(t.id) is None
            ]
            pending_offers = [a.trade_id for a in await uow.dispatcher.pending_assignments()]
            live_sessions = [s.trade_id for s in await uow.dispatcher.live_sessions()]

        for trade_id in pending_trades:
            try:
                evaluated = await self.evaluate_deadline(trade_id, now)
            except SWEEP_FAULTS as exc:
                report.errors += 1
                logger.error("sweep.deadline_failed", trade_id=str(trade_id), error=str(exc))
                continue
            report.deadlines_evaluated += 1
            if evaluated.ok and evaluated.unwrap().status == TradeStatus.REFUNDED:
                report.trades_refunded += 1
            elif evaluated.ok and evaluated.unwrap().status == TradeStatus.CANCELLED:
                report.trades_cancelled += 1

        for trade_id in pending_offers:
            try:
                if await self.expire_assignment(trade_id, now):
                    report.assignments_expired += 1
            except SWEEP_FAULTS as exc:
                report.errors += 1
                logger.error("sweep.assignment_failed", trade_id=str(trade_id), error=str(exc))

        for trade_id in live_sessions:
            try:
                if await self.evaluate_supervision(trade_id, now) == SupervisionStatus.TIMED_OUT:
                    report.supervisions_escalated += 1
            except SWEEP_FAULTS as exc:
                report.errors += 1
                logger.error("sweep.supervision_failed", trade_id=str(trade_id), error=str(exc))

        for trade_id in unassigned:
            try:
                if (await self._auto_assign(trade_id, now)).ok:
                    report.assignments_requested += 1
            except SWEEP_FAULTS as exc:
                report.errors += 1
                logger.error("sweep.assign_failed", trade_id=str(trade_id), error=str(exc))

        logger.info("sweep.completed", **vars(report))
        return report
