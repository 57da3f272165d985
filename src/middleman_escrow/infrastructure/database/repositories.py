"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Every status change goes through ``compare_and_set_status``: a single
``UPDATE ... WHERE id = :id AND status IN (:expected)``. Zero affected rows
means another actor changed the row first; the caller gets ``False`` and the
in-memory object is refreshed to the committed state.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.orm.attributes import set_committed_value

from middleman_escrow.domain.enums import AssignmentStatus, HoldStatus, SupervisionStatus
from middleman_escrow.infrastructure.database.orm_models import (
    EscrowHold,
    Middleman,
    MiddlemanAssignment,
    SupervisionSession,
    Trade,
    TradeEvent,
    TradeIssue,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from middleman_escrow.domain.enums import EventType, HoldRole, TradeStatus

_LIVE_HOLD_STATUSES = (HoldStatus.UNPAID.value, HoldStatus.HELD.value)
_LIVE_ASSIGNMENT_STATUSES = (AssignmentStatus.PENDING.value, AssignmentStatus.ACCEPTED.value)
_LIVE_SUPERVISION_STATUSES = (SupervisionStatus.ACTIVE.value, SupervisionStatus.COMPLETING.value)


def _values(statuses: str | Iterable[str]) -> list[str]:
    if isinstance(statuses, str):
        return [str(statuses)]
    return [str(s) for s in statuses]


class _Repository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _compare_and_set_status(
        self,
        row: Any,
        expected: str | Iterable[str],
        new: str,
        **values: Any,
    ) -> bool:
        model = type(row)
        if hasattr(model, "updated_at") and "updated_at" not in values:
            values["updated_at"] = datetime.now(UTC)
        stmt = (
            update(model)
            .where(model.id == row.id, model.status.in_(_values(expected)))
            .values(status=str(new), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            await self._session.refresh(row)
            return False
        set_committed_value(row, "status", str(new))
        for key, value in values.items():
            set_committed_value(row, key, value)
        return True


class TradeRepository(_Repository):
    """Data access for trades."""

    async def create(self, trade: Trade) -> Trade:
        """Insert a new trade."""
        self._session.add(trade)
        await self._session.flush()
        return trade

    async def get_by_id(self, trade_id: uuid.UUID) -> Trade | None:
        """Fetch a trade by its UUID, bypassing any stale identity-map copy."""
        result = await self._session.execute(
            select(Trade)
            .where(Trade.id == trade_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_by_status(self, status: TradeStatus) -> list[Trade]:
        """Fetch all trades with a given status, oldest first."""
        result = await self._session.execute(
            select(Trade).where(Trade.status == str(status)).order_by(Trade.created_at.asc())
        )
        return list(result.scalars().all())

    async def compare_and_set_status(
        self,
        trade: Trade,
        expected: TradeStatus | Iterable[TradeStatus],
        new: TradeStatus,
        **values: Any,
    ) -> bool:
        """Move ``trade`` to ``new`` only if it is still in ``expected``."""
        return await self._compare_and_set_status(trade, expected, new, **values)

    async def update_fields(
        self,
        trade: Trade,
        expected_status: TradeStatus,
        **values: Any,
    ) -> bool:
        """Update non-status columns, guarded by the current status."""
        values.setdefault("updated_at", datetime.now(UTC))
        stmt = (
            update(Trade)
            .where(Trade.id == trade.id, Trade.status == str(expected_status))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            await self._session.refresh(trade)
            return False
        for key, value in values.items():
            set_committed_value(trade, key, value)
        return True


class HoldRepository(_Repository):
    """Data access for escrow holds."""

    async def create(self, hold: EscrowHold) -> EscrowHold:
        """Insert a new hold. Raises IntegrityError if a live hold exists for the role."""
        self._session.add(hold)
        await self._session.flush()
        return hold

    async def get_by_external_ref(self, external_ref: str) -> EscrowHold | None:
        result = await self._session.execute(
            select(EscrowHold)
            .where(EscrowHold.external_ref == external_ref)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_live(self, trade_id: uuid.UUID, role: HoldRole) -> EscrowHold | None:
        """The unpaid or held hold for ``role``, if any."""
        result = await self._session.execute(
            select(EscrowHold).where(
                EscrowHold.trade_id == trade_id,
                EscrowHold.role == str(role),
                EscrowHold.status.in_(_LIVE_HOLD_STATUSES),
            )
        )
        return result.scalar_one_or_none()

    async def list_for_trade(self, trade_id: uuid.UUID) -> list[EscrowHold]:
        """Every hold of a trade in one consistent read, oldest first."""
        result = await self._session.execute(
            select(EscrowHold)
            .where(EscrowHold.trade_id == trade_id)
            .order_by(EscrowHold.created_at.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def set_external_ref(self, hold: EscrowHold, external_ref: str) -> EscrowHold:
        hold.external_ref = external_ref
        await self._session.flush()
        return hold

    async def compare_and_set_status(
        self,
        hold: EscrowHold,
        expected: HoldStatus | Iterable[HoldStatus],
        new: HoldStatus,
        **values: Any,
    ) -> bool:
        return await self._compare_and_set_status(hold, expected, new, **values)


class AssignmentRepository(_Repository):
    """Data access for middleman assignments."""

    async def create(self, assignment: MiddlemanAssignment) -> MiddlemanAssignment:
        """Insert a pending assignment. Raises IntegrityError if one is already live."""
        self._session.add(assignment)
        await self._session.flush()
        return assignment

    async def get_by_id(self, assignment_id: uuid.UUID) -> MiddlemanAssignment | None:
        result = await self._session.execute(
            select(MiddlemanAssignment)
            .where(MiddlemanAssignment.id == assignment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_live(self, trade_id: uuid.UUID) -> MiddlemanAssignment | None:
        """The pending or accepted assignment of a trade, if any."""
        result = await self._session.execute(
            select(MiddlemanAssignment)
            .where(
                MiddlemanAssignment.trade_id == trade_id,
                MiddlemanAssignment.status.in_(_LIVE_ASSIGNMENT_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_trade(self, trade_id: uuid.UUID) -> list[MiddlemanAssignment]:
        result = await self._session.execute(
            select(MiddlemanAssignment)
            .where(MiddlemanAssignment.trade_id == trade_id)
            .order_by(MiddlemanAssignment.assigned_at.asc())
        )
        return list(result.scalars().all())

    async def list_pending(self) -> list[MiddlemanAssignment]:
        result = await self._session.execute(
            select(MiddlemanAssignment)
            .where(MiddlemanAssignment.status == AssignmentStatus.PENDING.value)
            .order_by(MiddlemanAssignment.assigned_at.asc())
        )
        return list(result.scalars().all())

    async def excluded_middlemen(self, trade_id: uuid.UUID) -> set[str]:
        """Middlemen who already declined or ignored this trade."""
        result = await self._session.execute(
            select(MiddlemanAssignment.middleman_id).where(
                MiddlemanAssignment.trade_id == trade_id,
                MiddlemanAssignment.status.in_(
                    (AssignmentStatus.DECLINED.value, AssignmentStatus.TIMED_OUT.value)
                ),
            )
        )
        return set(result.scalars().all())

    async def pending_counts(self) -> dict[str, int]:
        result = await self._session.execute(
            select(MiddlemanAssignment.middleman_id, func.count())
            .where(MiddlemanAssignment.status == AssignmentStatus.PENDING.value)
            .group_by(MiddlemanAssignment.middleman_id)
        )
        return {middleman_id: count for middleman_id, count in result.all()}

    async def compare_and_set_status(
        self,
        assignment: MiddlemanAssignment,
        expected: AssignmentStatus,
        new: AssignmentStatus,
        **values: Any,
    ) -> bool:
        return await self._compare_and_set_status(assignment, expected, new, **values)


class SupervisionRepository(_Repository):
    """Data access for supervision sessions."""

    async def create(self, session_row: SupervisionSession) -> SupervisionSession:
        self._session.add(session_row)
        await self._session.flush()
        return session_row

    async def get_latest(self, trade_id: uuid.UUID) -> SupervisionSession | None:
        result = await self._session.execute(
            select(SupervisionSession)
            .where(SupervisionSession.trade_id == trade_id)
            .order_by(SupervisionSession.started_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_live(self) -> list[SupervisionSession]:
        result = await self._session.execute(
            select(SupervisionSession)
            .where(SupervisionSession.status.in_(_LIVE_SUPERVISION_STATUSES))
            .order_by(SupervisionSession.started_at.asc())
        )
        return list(result.scalars().all())

    async def live_counts(self) -> dict[str, int]:
        result = await self._session.execute(
            select(SupervisionSession.middleman_id, func.count())
            .where(SupervisionSession.status.in_(_LIVE_SUPERVISION_STATUSES))
            .group_by(SupervisionSession.middleman_id)
        )
        return {middleman_id: count for middleman_id, count in result.all()}

    async def compare_and_set_status(
        self,
        session_row: SupervisionSession,
        expected: SupervisionStatus | Iterable[SupervisionStatus],
        new: SupervisionStatus,
        **values: Any,
    ) -> bool:
        return await self._compare_and_set_status(session_row, expected, new, **values)


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        trade_id: uuid.UUID,
        event_type: EventType,
        old_status: TradeStatus | None,
        new_status: TradeStatus,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> TradeEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = TradeEvent(
            trade_id=trade_id,
            event_type=str(event_type),
            old_status=str(old_status) if old_status else None,
            new_status=str(new_status),
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def list_for_trade(self, trade_id: uuid.UUID) -> list[TradeEvent]:
        """Fetch all events for a trade in chronological order."""
        result = await self._session.execute(
            select(TradeEvent)
            .where(TradeEvent.trade_id == trade_id)
            .order_by(TradeEvent.created_at.asc())
        )
        return list(result.scalars().all())


class IssueRepository:
    """Data access for middleman issue reports."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, issue: TradeIssue) -> TradeIssue:
        self._session.add(issue)
        await self._session.flush()
        return issue

    async def list_for_trade(self, trade_id: uuid.UUID) -> list[TradeIssue]:
        result = await self._session.execute(
            select(TradeIssue)
            .where(TradeIssue.trade_id == trade_id)
            .order_by(TradeIssue.created_at.asc())
        )
        return list(result.scalars().all())


class MiddlemanRepository:
    """Data access for the middleman directory."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, middleman: Middleman) -> Middleman:
        self._session.add(middleman)
        await self._session.flush()
        return middleman

    async def get_by_id(self, middleman_id: str) -> Middleman | None:
        return await self._session.get(Middleman, middleman_id)

    async def list_all(self) -> list[Middleman]:
        result = await self._session.execute(select(Middleman).order_by(Middleman.id.asc()))
        return list(result.scalars().all())
