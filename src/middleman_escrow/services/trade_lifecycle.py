"""TradeLifecycle — the only writer of ``Trade.status``.

This is the application layer around the domain state machine:
    - Permission matrix (who may do what in which status)
    - Transition guard (adjacency table + per-edge business predicate)
    - Compare-and-swap persistence of the new status
    - Audit trail and ``trade.status_changed`` events

Side effects of entering a status are stamped in the same UPDATE as the
status itself: ``payment_deadline`` on PAYMENT_PENDING, ``completed_at`` on
any terminal status.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from middleman_escrow.domain.deadlines import DEFAULT_POLICY, DeadlinePolicy, create_deadline
from middleman_escrow.domain.enums import ActorRole, EventType, TradeAction, TradeStatus
from middleman_escrow.domain.exceptions import TradeNotFoundError
from middleman_escrow.domain.permissions import can_perform, resolve_role
from middleman_escrow.domain.results import ErrorCode, Result
from middleman_escrow.domain.state_machine import (
    TransitionContext,
    apply_transition,
    is_terminal,
    validate_transition,
)
from middleman_escrow.domain.timeutils import utcnow
from middleman_escrow.infrastructure.database.orm_models import Trade
from middleman_escrow.infrastructure.database.repositories import (
    EventRepository,
    TradeRepository,
)
from middleman_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from middleman_escrow.services.events import EventPublisher

logger = get_logger(__name__)


@dataclass(frozen=True)
class JoinOutcome:
    """Result of a join: ``bound`` is False for a social (chat-only) join."""

    status: TradeStatus
    bound: bool


class TradeLifecycle:
    """Manages the trade status lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        publisher: EventPublisher,
        deadline_policy: DeadlinePolicy = DEFAULT_POLICY,
    ) -> None:
        self._session = session
        self._publisher = publisher
        self._deadline_policy = deadline_policy
        self._trades = TradeRepository(session)
        self._events = EventRepository(session)

    # ------------------------------------------------------------------
    # Creation & lookup
    # ------------------------------------------------------------------

    async def create_trade(
        self,
        *,
        creator_id: str,
        item_name: str,
        price_minor: int,
        description: str | None = None,
    ) -> Trade:
        """Create a new trade in ACTIVE state.

        Raises:
            ValueError: If the price is not a positive integer or the item name is blank.
        """
        if isinstance(price_minor, bool) or not isinstance(price_minor, int) or price_minor <= 0:
            raise ValueError(f"price_minor must be a positive integer, got {price_minor!r}")
        if not item_name or not item_name.strip():
            raise ValueError("item_name must not be blank")

        trade = Trade(
            item_name=item_name.strip(),
            description=description,
            price_minor=price_minor,
            creator_id=creator_id,
            status=TradeStatus.ACTIVE.value,
        )
        trade = await self._trades.create(trade)

        await self._events.record(
            trade_id=trade.id,
            event_type=EventType.TRADE_STATUS_CHANGED,
            old_status=None,
            new_status=TradeStatus.ACTIVE,
            actor=creator_id,
            metadata={"item_name": trade.item_name, "price_minor": price_minor},
        )

        logger.info("trade.created", trade_id=str(trade.id), price_minor=price_minor)
        return trade

    async def get(self, trade_id: uuid.UUID) -> Trade:
        trade = await self._trades.get_by_id(trade_id)
        if trade is None:
            raise TradeNotFoundError(str(trade_id))
        return trade

    async def list_by_status(self, status: TradeStatus) -> list[Trade]:
        return await self._trades.list_by_status(status)

    # ------------------------------------------------------------------
    # Guarded transition
    # ------------------------------------------------------------------

    def context(self, trade: Trade, **facts: bool) -> TransitionContext:
        """Transition context from the trade's own facts plus facts owned elsewhere."""
        values = {
            "has_participant": trade.participant_id is not None,
            "terms_agreed": trade.terms_agreed,
        }
        values.update(facts)
        return TransitionContext(**values)

    async def transition(
        self,
        trade: Trade,
        to_status: TradeStatus,
        *,
        context: TransitionContext | None = None,
        actor: str = "SYSTEM",
        now: datetime | None = None,
        metadata: dict | None = None,
        **values: Any,
    ) -> Result[TradeStatus]:
        """Validate, then compare-and-swap ``trade`` into ``to_status``.

        Returns:
            Result with the new status, or INVALID_TRANSITION /
            REQUIREMENT_NOT_MET from validation, or STATE_CONFLICT if another
            actor changed the trade first.
        """
        from_status = TradeStatus(trade.status)
        check = validate_transition(from_status, to_status, context or self.context(trade))
        if not check.ok:
            logger.info(
                "trade.transition_rejected",
                trade_id=str(trade.id),
                current=from_status.value,
                attempted=str(to_status),
                error=str(check.error),
            )
            return check

        # The machine fires the named event for this edge.
        apply_transition(from_status, to_status)

        now = now or utcnow()
        if to_status == TradeStatus.PAYMENT_PENDING:
            values["payment_deadline"] = create_deadline(now, self._deadline_policy)
        if is_terminal(to_status):
            values["completed_at"] = now

        swapped = await self._trades.compare_and_set_status(trade, from_status, to_status, **values)
        if not swapped:
            logger.warning(
                "trade.transition_conflict",
                trade_id=str(trade.id),
                expected=from_status.value,
                actual=trade.status,
            )
            return Result.failure(
                ErrorCode.STATE_CONFLICT,
                f"Trade {trade.id} moved to {trade.status} before {from_status} -> {to_status}",
            )

        await self._events.record(
            trade_id=trade.id,
            event_type=EventType.TRADE_STATUS_CHANGED,
            old_status=from_status,
            new_status=TradeStatus(to_status),
            actor=actor,
            metadata=metadata,
        )
        self._publisher.emit(
            EventType.TRADE_STATUS_CHANGED,
            trade.id,
            **{"from": from_status.value, "to": str(to_status)},
        )

        logger.info(
            "trade.status_changed",
            trade_id=str(trade.id),
            old=from_status.value,
            new=str(to_status),
            actor=actor,
        )
        return Result.success(TradeStatus(to_status))

    # ------------------------------------------------------------------
    # Party actions
    # ------------------------------------------------------------------

    def authorize(self, trade: Trade, actor_id: str, action: TradeAction) -> Result[ActorRole]:
        """Check the role/action matrix for ``actor_id`` on this trade."""
        role = resolve_role(actor_id, trade.creator_id, trade.participant_id)
        if not can_perform(TradeStatus(trade.status), action, role):
            return Result.failure(
                ErrorCode.PERMISSION_DENIED,
                f"A {role} may not {action} a trade that is {trade.status}",
            )
        return Result.success(role)

    async def join(
        self,
        trade: Trade,
        actor_id: str,
        now: datetime | None = None,
    ) -> Result[JoinOutcome]:
        """Join a trade.

        The first joiner of an ACTIVE trade becomes the one economically bound
        participant. Joining during NEGOTIATING only adds a chat participant.
        """
        permission = self.authorize(trade, actor_id, TradeAction.JOIN)
        if not permission.ok:
            return Result.failure(permission.error, permission.reason)

        if TradeStatus(trade.status) == TradeStatus.NEGOTIATING:
            logger.info("trade.social_join", trade_id=str(trade.id), actor=actor_id)
            return Result.success(JoinOutcome(status=TradeStatus.NEGOTIATING, bound=False))

        result = await self.transition(
            trade,
            TradeStatus.NEGOTIATING,
            context=self.context(trade, has_participant=True),
            actor=actor_id,
            now=now,
            participant_id=actor_id,
            creator_agreed=False,
            participant_agreed=False,
        )
        if not result.ok:
            return Result.failure(result.error, result.reason)
        return Result.success(JoinOutcome(status=TradeStatus.NEGOTIATING, bound=True))

    async def agree_terms(
        self,
        trade: Trade,
        actor_id: str,
        now: datetime | None = None,
    ) -> Result[TradeStatus]:
        """Record one party's agreement; move to PAYMENT_PENDING once both agreed."""
        role = resolve_role(actor_id, trade.creator_id, trade.participant_id)
        if role not in (ActorRole.CREATOR, ActorRole.PARTICIPANT):
            return Result.failure(
                ErrorCode.PERMISSION_DENIED, "Only the creator or the bound participant can agree"
            )
        if TradeStatus(trade.status) != TradeStatus.NEGOTIATING:
            return Result.failure(
                ErrorCode.INVALID_TRANSITION,
                f"Terms can only be agreed while negotiating, trade is {trade.status}",
            )

        flag = "creator_agreed" if role == ActorRole.CREATOR else "participant_agreed"
        if not getattr(trade, flag):
            updated = await self._trades.update_fields(trade, TradeStatus.NEGOTIATING, **{flag: True})
            if not updated:
                return Result.failure(
                    ErrorCode.STATE_CONFLICT, f"Trade moved to {trade.status} during agreement"
                )
            # Pick up the other party's flag if it was committed concurrently.
            await self._session.refresh(trade)

        logger.info("trade.terms_agreed", trade_id=str(trade.id), role=role.value)
        if not trade.terms_agreed:
            return Result.success(TradeStatus.NEGOTIATING)
        return await self.transition(trade, TradeStatus.PAYMENT_PENDING, actor=actor_id, now=now)

    async def leave(
        self,
        trade: Trade,
        actor_id: str,
        now: datetime | None = None,
    ) -> Result[TradeStatus]:
        """The bound participant walks away during negotiation; the trade reopens."""
        role = resolve_role(actor_id, trade.creator_id, trade.participant_id)
        if role != ActorRole.PARTICIPANT:
            return Result.failure(
                ErrorCode.PERMISSION_DENIED, "Only the bound participant can leave a trade"
            )
        return await self.transition(
            trade,
            TradeStatus.ACTIVE,
            actor=actor_id,
            now=now,
            participant_id=None,
            creator_agreed=False,
            participant_agreed=False,
        )

    async def cancel(
        self,
        trade: Trade,
        actor_id: str,
        now: datetime | None = None,
    ) -> Result[TradeStatus]:
        """Party-initiated cancellation, gated by the permission matrix."""
        permission = self.authorize(trade, actor_id, TradeAction.CANCEL)
        if not permission.ok:
            return Result.failure(permission.error, permission.reason)
        return await self.transition(
            trade,
            TradeStatus.CANCELLED,
            actor=actor_id,
            now=now,
            metadata={"reason": "cancelled_by_party"},
        )
