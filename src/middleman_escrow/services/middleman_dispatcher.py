"""MiddlemanDispatcher — owner of assignments and supervision sessions.

Cycle for one trade:

    request  -> pending  --accept-->  accepted  (+ supervision session)
                         --decline--> declined  (reassign, excluding them)
                         --15 min-->  timed_out (reassign, excluding them)

``pending -> accepted`` and ``pending -> timed_out`` are both
compare-and-swaps on the same row, so whichever commits first wins and the
other caller gets an explicit rejection.

A supervision window that runs out is escalated to a human; the dispatcher
never moves money on its own.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from middleman_escrow.domain.dispatch import (
    DEFAULT_POLICY,
    AssignmentTimeoutCheck,
    DispatchPolicy,
    SupervisionReport,
    check_assignment_timeout,
    estimate_response_minutes,
    select_middleman,
    supervision_status,
)
from middleman_escrow.domain.enums import (
    AssignmentStatus,
    EventType,
    IssueType,
    SupervisionStatus,
    TradeStatus,
)
from middleman_escrow.domain.results import ErrorCode, Result
from middleman_escrow.domain.timeutils import utcnow
from middleman_escrow.infrastructure.database.orm_models import (
    MiddlemanAssignment,
    SupervisionSession,
    TradeIssue,
)
from middleman_escrow.infrastructure.database.repositories import (
    AssignmentRepository,
    IssueRepository,
    SupervisionRepository,
)
from middleman_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from middleman_escrow.infrastructure.database.orm_models import Trade
    from middleman_escrow.services.events import EventPublisher
    from middleman_escrow.services.roster import MiddlemanRoster

logger = get_logger(__name__)

_LIVE_SUPERVISION = (SupervisionStatus.ACTIVE, SupervisionStatus.COMPLETING)


class MiddlemanDispatcher:
    """Assigns middlemen and times their answers and supervision windows."""

    def __init__(
        self,
        session: AsyncSession,
        roster: MiddlemanRoster,
        publisher: EventPublisher,
        policy: DispatchPolicy = DEFAULT_POLICY,
    ) -> None:
        self._session = session
        self._roster = roster
        self._publisher = publisher
        self._policy = policy
        self._assignments = AssignmentRepository(session)
        self._supervisions = SupervisionRepository(session)
        self._issues = IssueRepository(session)

    @property
    def policy(self) -> DispatchPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    async def request_assignment(
        self,
        trade: Trade,
        *,
        exclude: Iterable[str] = (),
        now: datetime | None = None,
    ) -> Result[MiddlemanAssignment]:
        """Offer the trade to the best available middleman.

        Middlemen who already declined or let an offer for this trade time
        out are never offered it again.
        """
        if TradeStatus(trade.status) != TradeStatus.PAYMENT_COMPLETE:
            return Result.failure(
                ErrorCode.REQUIREMENT_NOT_MET,
                f"Both holds must be verified before assigning a middleman, trade is {trade.status}",
            )

        trade_id = trade.id
        live = await self._assignments.get_live(trade_id)
        if live is not None:
            return Result.failure(
                ErrorCode.STATE_CONFLICT,
                f"Trade already has a {live.status} assignment for {live.middleman_id}",
            )

        excluded = await self._assignments.excluded_middlemen(trade_id)
        excluded.update(exclude)
        candidates = await self._roster.candidates(self._session)
        chosen = select_middleman(candidates, excluded, self._policy)
        if chosen is None:
            logger.warning(
                "dispatcher.no_available_middleman",
                trade_id=str(trade_id),
                pool=len(candidates),
                excluded=sorted(excluded),
            )
            return Result.failure(
                ErrorCode.NO_AVAILABLE_MIDDLEMAN, "No middleman is available, try again shortly"
            )

        assignment = MiddlemanAssignment(
            trade_id=trade_id,
            middleman_id=chosen.middleman_id,
            status=AssignmentStatus.PENDING.value,
            assigned_at=now or utcnow(),
            estimated_response_minutes=estimate_response_minutes(chosen.current_workload),
        )
        try:
            await self._assignments.create(assignment)
        except IntegrityError:
            await self._session.rollback()
            self._publisher.discard()
            logger.warning("dispatcher.assignment_race", trade_id=str(trade_id))
            return Result.failure(
                ErrorCode.STATE_CONFLICT, "Another assignment was created for this trade"
            )

        self._publisher.emit(
            EventType.MIDDLEMAN_ASSIGNED,
            trade_id,
            middleman_id=chosen.middleman_id,
            estimated_response_minutes=assignment.estimated_response_minutes,
        )
        logger.info(
            "dispatcher.assigned",
            trade_id=str(trade_id),
            middleman_id=chosen.middleman_id,
            workload=chosen.current_workload,
        )
        return Result.success(assignment)

    async def live_assignment(self, trade_id: uuid.UUID) -> MiddlemanAssignment | None:
        return await self._assignments.get_live(trade_id)

    async def assignments(self, trade_id: uuid.UUID) -> list[MiddlemanAssignment]:
        return await self._assignments.list_for_trade(trade_id)

    async def pending_assignments(self) -> list[MiddlemanAssignment]:
        return await self._assignments.list_pending()

    def check_timeout(self, assignment: MiddlemanAssignment, now: datetime) -> AssignmentTimeoutCheck:
        return check_assignment_timeout(assignment.assigned_at, now, self._policy)

    async def expire(self, assignment: MiddlemanAssignment, now: datetime | None = None) -> bool:
        """pending -> timed_out. False if the assignment was answered first."""
        expired = await self._assignments.compare_and_set_status(
            assignment,
            AssignmentStatus.PENDING,
            AssignmentStatus.TIMED_OUT,
            responded_at=now or utcnow(),
        )
        if expired:
            self._publisher.emit(
                EventType.MIDDLEMAN_TIMED_OUT,
                assignment.trade_id,
                middleman_id=assignment.middleman_id,
            )
            logger.info(
                "dispatcher.assignment_timed_out",
                trade_id=str(assignment.trade_id),
                middleman_id=assignment.middleman_id,
            )
        return expired

    async def _pending_for(
        self, trade_id: uuid.UUID, middleman_id: str
    ) -> Result[MiddlemanAssignment]:
        assignment = await self._assignments.get_live(trade_id)
        if assignment is None or assignment.middleman_id != middleman_id:
            return Result.failure(
                ErrorCode.PERMISSION_DENIED,
                f"No pending assignment for middleman {middleman_id} on this trade",
            )
        if assignment.status != AssignmentStatus.PENDING.value:
            return Result.failure(
                ErrorCode.STATE_CONFLICT, f"Assignment is already {assignment.status}"
            )
        return Result.success(assignment)

    async def accept(
        self,
        trade: Trade,
        middleman_id: str,
        now: datetime | None = None,
    ) -> Result[SupervisionSession]:
        """Accept a pending offer and open the supervision window.

        An offer accepted after its timeout is expired instead and the
        caller gets ASSIGNMENT_TIMEOUT.
        """
        now = now or utcnow()
        pending = await self._pending_for(trade.id, middleman_id)
        if not pending.ok:
            return Result.failure(pending.error, pending.reason)
        assignment = pending.unwrap()

        if self.check_timeout(assignment, now).is_timed_out:
            await self.expire(assignment, now)
            return Result.failure(
                ErrorCode.ASSIGNMENT_TIMEOUT,
                f"Assignment expired after {self._policy.assignment_timeout_minutes} minutes",
            )

        accepted = await self._assignments.compare_and_set_status(
            assignment, AssignmentStatus.PENDING, AssignmentStatus.ACCEPTED, responded_at=now
        )
        if not accepted:
            return Result.failure(
                ErrorCode.STATE_CONFLICT, f"Assignment is already {assignment.status}"
            )

        supervision = SupervisionSession(
            trade_id=trade.id,
            assignment_id=assignment.id,
            middleman_id=middleman_id,
            status=SupervisionStatus.ACTIVE.value,
            started_at=now,
        )
        await self._supervisions.create(supervision)

        self._publisher.emit(EventType.MIDDLEMAN_ACCEPTED, trade.id, middleman_id=middleman_id)
        logger.info("dispatcher.accepted", trade_id=str(trade.id), middleman_id=middleman_id)
        return Result.success(supervision)

    async def decline(
        self,
        trade: Trade,
        middleman_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Result[MiddlemanAssignment]:
        pending = await self._pending_for(trade.id, middleman_id)
        if not pending.ok:
            return pending
        assignment = pending.unwrap()

        declined = await self._assignments.compare_and_set_status(
            assignment,
            AssignmentStatus.PENDING,
            AssignmentStatus.DECLINED,
            responded_at=now or utcnow(),
            decline_reason=reason,
        )
        if not declined:
            return Result.failure(
                ErrorCode.STATE_CONFLICT, f"Assignment is already {assignment.status}"
            )

        self._publisher.emit(
            EventType.MIDDLEMAN_DECLINED, trade.id, middleman_id=middleman_id, reason=reason
        )
        logger.info(
            "dispatcher.declined", trade_id=str(trade.id), middleman_id=middleman_id, reason=reason
        )
        return Result.success(assignment)

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    async def latest_session(self, trade_id: uuid.UUID) -> SupervisionSession | None:
        return await self._supervisions.get_latest(trade_id)

    async def live_sessions(self) -> list[SupervisionSession]:
        return await self._supervisions.list_live()

    def report(self, supervision: SupervisionSession, now: datetime) -> SupervisionReport:
        return supervision_status(
            supervision.started_at,
            now,
            SupervisionStatus(supervision.status),
            self._policy,
        )

    async def evaluate_supervision(
        self,
        supervision: SupervisionSession,
        now: datetime | None = None,
    ) -> SupervisionStatus:
        """Persist the window's current classification and return it."""
        now = now or utcnow()
        report = self.report(supervision, now)
        current = SupervisionStatus(supervision.status)

        if report.status == SupervisionStatus.TIMED_OUT and current in _LIVE_SUPERVISION:
            escalated = await self._supervisions.compare_and_set_status(
                supervision,
                _LIVE_SUPERVISION,
                SupervisionStatus.TIMED_OUT,
                ended_at=now,
                decision="escalated",
            )
            if escalated:
                self._publisher.emit(
                    EventType.SUPERVISION_TIMED_OUT,
                    supervision.trade_id,
                    middleman_id=supervision.middleman_id,
                    next_action=report.next_action,
                )
                logger.warning(
                    "dispatcher.supervision_escalated",
                    trade_id=str(supervision.trade_id),
                    middleman_id=supervision.middleman_id,
                )
        elif report.status == SupervisionStatus.COMPLETING and current == SupervisionStatus.ACTIVE:
            await self._supervisions.compare_and_set_status(
                supervision, SupervisionStatus.ACTIVE, SupervisionStatus.COMPLETING
            )
        return SupervisionStatus(supervision.status)

    async def _open_session(
        self,
        trade: Trade,
        middleman_id: str,
        now: datetime,
    ) -> Result[SupervisionSession]:
        supervision = await self._supervisions.get_latest(trade.id)
        if supervision is None or supervision.middleman_id != middleman_id:
            return Result.failure(
                ErrorCode.PERMISSION_DENIED,
                f"Middleman {middleman_id} is not supervising this trade",
            )
        status = await self.evaluate_supervision(supervision, now)
        if status == SupervisionStatus.TIMED_OUT:
            return Result.failure(
                ErrorCode.SUPERVISION_TIMEOUT,
                "Supervision window has ended; the trade is escalated to support",
            )
        if status not in _LIVE_SUPERVISION:
            return Result.failure(
                ErrorCode.STATE_CONFLICT, f"Supervision already {supervision.decision}"
            )
        return Result.success(supervision)

    async def _close_session(
        self,
        supervision: SupervisionSession,
        decision: str,
        notes: str | None,
        now: datetime,
    ) -> Result[SupervisionSession]:
        closed = await self._supervisions.compare_and_set_status(
            supervision,
            _LIVE_SUPERVISION,
            SupervisionStatus.COMPLETED,
            ended_at=now,
            decision=decision,
            notes=notes,
        )
        if not closed:
            return Result.failure(
                ErrorCode.STATE_CONFLICT, f"Supervision is already {supervision.status}"
            )
        return Result.success(supervision)

    async def approve(
        self,
        trade: Trade,
        middleman_id: str,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Result[SupervisionSession]:
        """Record the middleman's approval. Moving the trade and the money is the caller's job."""
        now = now or utcnow()
        opened = await self._open_session(trade, middleman_id, now)
        if not opened.ok:
            return opened
        result = await self._close_session(opened.unwrap(), "approved", notes, now)
        if result.ok:
            logger.info("dispatcher.approved", trade_id=str(trade.id), middleman_id=middleman_id)
        return result

    async def reject(
        self,
        trade: Trade,
        middleman_id: str,
        reason: str,
        now: datetime | None = None,
    ) -> Result[SupervisionSession]:
        now = now or utcnow()
        opened = await self._open_session(trade, middleman_id, now)
        if not opened.ok:
            return opened
        result = await self._close_session(opened.unwrap(), "rejected", reason, now)
        if result.ok:
            logger.info("dispatcher.rejected", trade_id=str(trade.id), middleman_id=middleman_id)
        return result

    async def report_issue(
        self,
        trade: Trade,
        middleman_id: str,
        issue_type: IssueType,
        description: str,
        now: datetime | None = None,
    ) -> Result[TradeIssue]:
        """Record an issue. Escalating types also close the supervision session."""
        now = now or utcnow()
        opened = await self._open_session(trade, middleman_id, now)
        if not opened.ok:
            return Result.failure(opened.error, opened.reason)

        issue_type = IssueType(issue_type)
        issue = TradeIssue(
            trade_id=trade.id,
            middleman_id=middleman_id,
            issue_type=issue_type.value,
            description=description,
            escalated=issue_type.escalates,
            created_at=now,
        )
        await self._issues.create(issue)

        if issue.escalated:
            closed = await self._close_session(opened.unwrap(), "rejected", description, now)
            if not closed.ok:
                return Result.failure(closed.error, closed.reason)

        self._publisher.emit(
            EventType.SUPERVISION_ISSUE_REPORTED,
            trade.id,
            middleman_id=middleman_id,
            issue_type=issue_type.value,
            escalated=issue.escalated,
        )
        logger.info(
            "dispatcher.issue_reported",
            trade_id=str(trade.id),
            issue_type=issue_type.value,
            escalated=issue.escalated,
        )
        return Result.success(issue)

    async def issues(self, trade_id: uuid.UUID) -> list[TradeIssue]:
        return await self._issues.list_for_trade(trade_id)
