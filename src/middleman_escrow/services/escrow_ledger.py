"""EscrowLedger — the only writer of ``EscrowHold`` rows.

Each party bonds themselves to a trade with one hold of
``subtotal + platform fee + processor fee``. Funds move only through this
class:

    release  participant's hold pays the creator (net of platform fee),
             the creator's own hold is returned unchanged
    refund   every hold still live is returned; holds that were never
             captured are voided at the processor

Every hold status change is a compare-and-swap, and every money movement
carries an idempotency key derived from the hold id. Claiming the hold
row comes first, so a repeated release or refund finds the hold already
terminal and does nothing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from middleman_escrow.domain.enums import (
    EscrowStatus,
    EventType,
    HoldRole,
    HoldStatus,
    ProcessorOutcome,
    TradeStatus,
)
from middleman_escrow.domain.exceptions import HoldNotFoundError
from middleman_escrow.domain.fees import (
    FeeBreakdown,
    FeeSchedule,
    compute_fees,
    validate_payment_amount,
)
from middleman_escrow.domain.results import ErrorCode, Result
from middleman_escrow.domain.timeutils import utcnow
from middleman_escrow.infrastructure.database.orm_models import EscrowHold
from middleman_escrow.infrastructure.database.repositories import HoldRepository
from middleman_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from middleman_escrow.infrastructure.database.orm_models import Trade
    from middleman_escrow.services.events import EventPublisher
    from middleman_escrow.services.payment_processor import PaymentProcessor

logger = get_logger(__name__)


@dataclass(frozen=True)
class HoldReceipt:
    hold_id: uuid.UUID
    role: HoldRole
    external_ref: str
    amount_due: int
    fees: FeeBreakdown


@dataclass(frozen=True)
class HoldVerification:
    both_paid: bool
    total_held: int
    creator_paid: bool
    participant_paid: bool


@dataclass(frozen=True)
class ReleaseSummary:
    transferred_to_creator: int
    creator_hold_returned: int
    platform_fee: int
    already_released: bool = False


@dataclass(frozen=True)
class RefundSummary:
    refunded: list[HoldRole] = field(default_factory=list)
    voided: list[HoldRole] = field(default_factory=list)
    amount_refunded: int = 0

    @property
    def nothing_to_do(self) -> bool:
        return not self.refunded and not self.voided


class EscrowLedger:
    """Creates, verifies, releases and refunds escrow holds."""

    def __init__(
        self,
        session: AsyncSession,
        processor: PaymentProcessor,
        publisher: EventPublisher,
        fee_schedule: FeeSchedule | None = None,
    ) -> None:
        self._session = session
        self._processor = processor
        self._publisher = publisher
        self._fees = fee_schedule or FeeSchedule()
        self._holds = HoldRepository(session)

    def fees_for(self, trade: Trade) -> FeeBreakdown:
        return compute_fees(trade.price_minor, self._fees)

    # ------------------------------------------------------------------
    # Hold creation
    # ------------------------------------------------------------------

    async def create_hold(self, trade: Trade, role: HoldRole, payer_id: str) -> Result[HoldReceipt]:
        """Open the one hold for ``role`` on this trade.

        A second request while the role's hold is unpaid or held is
        DUPLICATE_PAYMENT. The partial unique index backs up the pre-check
        when two requests race.
        """
        if TradeStatus(trade.status) != TradeStatus.PAYMENT_PENDING:
            return Result.failure(
                ErrorCode.REQUIREMENT_NOT_MET,
                f"Holds can only be created while payment is pending, trade is {trade.status}",
            )

        trade_id = trade.id
        existing = await self._holds.get_live(trade_id, role)
        if existing is not None:
            return Result.failure(
                ErrorCode.DUPLICATE_PAYMENT,
                f"The {role} already has a {existing.status} hold on this trade",
            )

        fees = self.fees_for(trade)
        hold = EscrowHold(
            trade_id=trade_id,
            payer_id=payer_id,
            role=role.value,
            amount_minor=fees.total,
            subtotal_minor=fees.subtotal,
            platform_fee_minor=fees.platform_fee,
            processor_fee_minor=fees.processor_fee,
            status=HoldStatus.UNPAID.value,
        )
        try:
            await self._holds.create(hold)
        except IntegrityError:
            await self._session.rollback()
            self._publisher.discard()
            logger.warning("escrow.duplicate_hold_race", trade_id=str(trade_id), role=role.value)
            return Result.failure(
                ErrorCode.DUPLICATE_PAYMENT,
                f"The {role} already has a live hold on this trade",
            )

        external_ref = await self._processor.create_hold(
            payer_id=payer_id,
            amount=fees.total,
            idempotency_key=f"hold-{hold.id}",
        )
        await self._holds.set_external_ref(hold, external_ref)

        self._publisher.emit(
            EventType.PAYMENT_HOLD_CREATED,
            trade_id,
            role=role.value,
            amount=fees.total,
        )
        logger.info(
            "escrow.hold_created",
            trade_id=str(trade_id),
            role=role.value,
            amount=fees.total,
            external_ref=external_ref,
        )
        return Result.success(
            HoldReceipt(
                hold_id=hold.id,
                role=role,
                external_ref=external_ref,
                amount_due=fees.total,
                fees=fees,
            )
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def _promote(self, hold: EscrowHold) -> bool:
        """UNPAID -> HELD once the processor reports final success."""
        promoted = await self._holds.compare_and_set_status(hold, HoldStatus.UNPAID, HoldStatus.HELD)
        if promoted:
            self._publisher.emit(EventType.PAYMENT_VERIFIED, hold.trade_id, role=hold.role)
            logger.info("escrow.hold_verified", trade_id=str(hold.trade_id), role=hold.role)
        return promoted or hold.status == HoldStatus.HELD.value

    async def verify_both_holds(self, trade: Trade) -> HoldVerification:
        """Ask the processor about both live holds, read together in one query.

        Only a final ``succeeded`` counts as paid; pending never does.
        """
        paid = {HoldRole.CREATOR: False, HoldRole.PARTICIPANT: False}
        total_held = 0

        for hold in await self._holds.list_for_trade(trade.id):
            if HoldStatus(hold.status).is_terminal or hold.external_ref is None:
                continue
            outcome = await self._processor.query_hold_status(hold.external_ref)
            if outcome != ProcessorOutcome.SUCCEEDED:
                continue
            if hold.status == HoldStatus.UNPAID.value and not await self._promote(hold):
                continue
            paid[HoldRole(hold.role)] = True
            total_held += hold.amount_minor

        return HoldVerification(
            both_paid=all(paid.values()),
            total_held=total_held,
            creator_paid=paid[HoldRole.CREATOR],
            participant_paid=paid[HoldRole.PARTICIPANT],
        )

    async def apply_processor_outcome(
        self,
        external_ref: str,
        outcome: ProcessorOutcome,
        amount_captured: int | None = None,
        now: datetime | None = None,
    ) -> Result[EscrowHold]:
        """Record what the processor reported for one hold.

        Raises:
            HoldNotFoundError: If no hold carries ``external_ref``.
        """
        hold = await self._holds.get_by_external_ref(external_ref)
        if hold is None:
            raise HoldNotFoundError(external_ref)
        status = HoldStatus(hold.status)

        if outcome == ProcessorOutcome.PENDING:
            return Result.success(hold)

        if outcome == ProcessorOutcome.FAILED:
            if status == HoldStatus.UNPAID:
                await self._holds.compare_and_set_status(
                    hold, HoldStatus.UNPAID, HoldStatus.FAILED, settled_at=now or utcnow()
                )
                logger.info("escrow.hold_failed", trade_id=str(hold.trade_id), role=hold.role)
            return Result.success(hold)

        if status in (HoldStatus.VOIDED, HoldStatus.FAILED):
            # Captured after we gave up on it: hand the money straight back.
            await self._processor.refund(external_ref, idempotency_key=f"refund-{hold.id}")
            logger.warning(
                "escrow.late_capture_refunded",
                trade_id=str(hold.trade_id),
                role=hold.role,
                hold_status=status.value,
            )
            return Result.success(hold)

        if status != HoldStatus.UNPAID:
            return Result.success(hold)

        if amount_captured is not None:
            check = validate_payment_amount(
                amount_captured, hold.amount_minor, self._fees.payment_tolerance
            )
            if not check.ok:
                await self._reject_capture(hold, amount_captured, now or utcnow())
                return Result.failure(check.error, check.reason)

        await self._promote(hold)
        return Result.success(hold)

    async def _reject_capture(self, hold: EscrowHold, captured: int, now: datetime) -> None:
        """A wrong-amount capture fails the hold for good and goes back to the payer.

        The role may open a fresh hold afterwards. Without the terminal status
        a later processor query would see ``succeeded`` and promote the hold.
        """
        if await self._holds.compare_and_set_status(
            hold, HoldStatus.UNPAID, HoldStatus.FAILED, settled_at=now
        ):
            await self._processor.refund(hold.external_ref, idempotency_key=f"refund-{hold.id}")
        logger.warning(
            "escrow.payment_mismatch",
            trade_id=str(hold.trade_id),
            role=hold.role,
            captured=captured,
            expected=hold.amount_minor,
        )

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(self, trade: Trade, now: datetime | None = None) -> Result[ReleaseSummary]:
        """Pay the creator from the participant's hold and return the creator's hold."""
        fees = self.fees_for(trade)
        holds = await self._holds.list_for_trade(trade.id)
        released = {h.role for h in holds if h.status == HoldStatus.RELEASED.value}
        if released == {HoldRole.CREATOR.value, HoldRole.PARTICIPANT.value}:
            return Result.success(
                ReleaseSummary(
                    transferred_to_creator=fees.net_to_seller,
                    creator_hold_returned=fees.total,
                    platform_fee=fees.platform_fee,
                    already_released=True,
                )
            )

        verification = await self.verify_both_holds(trade)
        if not verification.both_paid:
            return Result.failure(
                ErrorCode.REQUIREMENT_NOT_MET,
                "Both payments must be completed before release",
            )

        creator_hold = await self._holds.get_live(trade.id, HoldRole.CREATOR)
        participant_hold = await self._holds.get_live(trade.id, HoldRole.PARTICIPANT)
        now = now or utcnow()
        for hold in (participant_hold, creator_hold):
            if hold is None or not await self._holds.compare_and_set_status(
                hold, HoldStatus.HELD, HoldStatus.RELEASED, settled_at=now
            ):
                return Result.failure(
                    ErrorCode.STATE_CONFLICT, "A hold changed while the release was in progress"
                )

        await self._processor.transfer(
            participant_hold.external_ref,
            recipient_id=trade.creator_id,
            amount=fees.net_to_seller,
            idempotency_key=f"release-{participant_hold.id}",
        )
        await self._processor.refund(
            creator_hold.external_ref,
            idempotency_key=f"return-{creator_hold.id}",
        )

        summary = ReleaseSummary(
            transferred_to_creator=fees.net_to_seller,
            creator_hold_returned=creator_hold.amount_minor,
            platform_fee=fees.platform_fee,
        )
        self._publisher.emit(
            EventType.ESCROW_RELEASED,
            trade.id,
            amounts={
                "to_creator": summary.transferred_to_creator,
                "creator_hold_returned": summary.creator_hold_returned,
                "platform_fee": summary.platform_fee,
            },
        )
        logger.info(
            "escrow.released",
            trade_id=str(trade.id),
            to_creator=summary.transferred_to_creator,
            platform_fee=summary.platform_fee,
        )
        return Result.success(summary)

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund(
        self,
        trade: Trade,
        reason: str,
        now: datetime | None = None,
    ) -> Result[RefundSummary]:
        """Return every live hold, whatever the trade status. Safe to repeat.

        Each hold is re-read and claimed immediately before any money moves;
        holds already released, refunded, failed or voided are skipped.
        """
        now = now or utcnow()
        refunded: list[HoldRole] = []
        voided: list[HoldRole] = []
        amount = 0

        for hold in await self._holds.list_for_trade(trade.id):
            role = HoldRole(hold.role)
            if HoldStatus(hold.status).is_terminal:
                continue

            if hold.status == HoldStatus.UNPAID.value:
                outcome = ProcessorOutcome.PENDING
                if hold.external_ref is not None:
                    outcome = await self._processor.query_hold_status(hold.external_ref)
                if outcome != ProcessorOutcome.SUCCEEDED:
                    final = (
                        HoldStatus.FAILED if outcome == ProcessorOutcome.FAILED else HoldStatus.VOIDED
                    )
                    if await self._holds.compare_and_set_status(
                        hold, HoldStatus.UNPAID, final, settled_at=now
                    ):
                        if hold.external_ref is not None and final == HoldStatus.VOIDED:
                            await self._processor.cancel_hold(hold.external_ref)
                        voided.append(role)
                    continue
                if not await self._promote(hold):
                    continue

            if not await self._holds.compare_and_set_status(
                hold, HoldStatus.HELD, HoldStatus.REFUNDED, settled_at=now
            ):
                continue
            await self._processor.refund(hold.external_ref, idempotency_key=f"refund-{hold.id}")
            refunded.append(role)
            amount += hold.amount_minor

        summary = RefundSummary(refunded=refunded, voided=voided, amount_refunded=amount)
        if refunded:
            self._publisher.emit(
                EventType.ESCROW_REFUNDED,
                trade.id,
                holds=[r.value for r in refunded],
                amount=amount,
                reason=reason,
            )
        logger.info(
            "escrow.refunded",
            trade_id=str(trade.id),
            refunded=[r.value for r in refunded],
            voided=[r.value for r in voided],
            reason=reason,
        )
        return Result.success(summary)

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    async def holds(self, trade_id: uuid.UUID) -> list[EscrowHold]:
        return await self._holds.list_for_trade(trade_id)

    async def status(self, trade_id: uuid.UUID) -> EscrowStatus:
        """Coarse escrow view derived from stored hold statuses."""
        holds = await self._holds.list_for_trade(trade_id)
        statuses = {HoldStatus(h.status) for h in holds}
        held_roles = {h.role for h in holds if h.status == HoldStatus.HELD.value}

        if HoldStatus.RELEASED in statuses:
            return EscrowStatus.RELEASED
        if len(held_roles) == 2:
            return EscrowStatus.HELD
        if held_roles:
            return EscrowStatus.PARTIAL
        if HoldStatus.REFUNDED in statuses and HoldStatus.UNPAID not in statuses:
            return EscrowStatus.REFUNDED
        return EscrowStatus.PENDING
