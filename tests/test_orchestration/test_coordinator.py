"""End-to-end tests for TradeCoordinator.

Every scenario runs against a real (SQLite) database with the simulated
processor, passing ``now`` explicitly so deadlines and timeouts are
deterministic.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from conftest import CREATOR, PARTICIPANT, negotiated_trade, paid_trade, supervised_trade

from middleman_escrow.domain.enums import (
    ActorRole,
    AssignmentStatus,
    EnforcementActionType,
    EscrowStatus,
    EventType,
    HoldRole,
    HoldStatus,
    IssueType,
    ProcessorOutcome,
    TradeAction,
    TradeStatus,
    Urgency,
)
from middleman_escrow.domain.exceptions import EscrowInvariantError, PaymentProcessorError
from middleman_escrow.domain.results import ErrorCode, Result
from middleman_escrow.orchestration.coordinator import TradeCoordinator
from middleman_escrow.services.escrow_ledger import EscrowLedger
from middleman_escrow.services.payment_processor import SimulatedPaymentProcessor


class BrokenTransferProcessor(SimulatedPaymentProcessor):
    async def transfer(self, external_ref, *, recipient_id, amount, idempotency_key):
        raise PaymentProcessorError("payout rail down", external_ref=external_ref)


# ============================================================
# Happy path
# ============================================================


class TestHappyPath:
    async def test_full_trade_completes_and_releases(self, coordinator, processor, sink, t0) -> None:
        trade_id = await supervised_trade(coordinator, processor, t0)
        done_at = t0 + timedelta(minutes=10)

        result = await coordinator.approve_trade(trade_id, "mm_alice", "clean swap", done_at)

        assert result.unwrap() == TradeStatus.COMPLETED
        snapshot = await coordinator.get_trade_snapshot(trade_id, CREATOR, done_at)
        assert snapshot.completed_at == done_at
        assert snapshot.escrow_status == EscrowStatus.RELEASED
        assert {h.status for h in snapshot.holds} == {HoldStatus.RELEASED}
        assert snapshot.supervision.decision == "approved"

        participant_ref = next(h.external_ref for h in snapshot.holds if h.role == HoldRole.PARTICIPANT)
        # 5000 minus the 3% platform fee
        assert processor.hold(participant_ref).transfers == [(CREATOR, 4850)]
        assert processor.transfer_count == 1
        assert processor.refund_count == 1

        released = sink.of_type(EventType.ESCROW_RELEASED)
        assert released[0].payload["amounts"] == {
            "to_creator": 4850,
            "creator_hold_returned": 5325,
            "platform_fee": 150,
        }

    async def test_audit_trail_follows_the_lifecycle(self, coordinator, processor, t0) -> None:
        trade_id = await supervised_trade(coordinator, processor, t0)
        await coordinator.approve_trade(trade_id, "mm_alice", None, t0 + timedelta(minutes=10))

        trail = await coordinator.get_audit_trail(trade_id)

        assert [e.new_status for e in trail] == [
            "ACTIVE",
            "NEGOTIATING",
            "PAYMENT_PENDING",
            "PAYMENT_COMPLETE",
            "IN_PROGRESS",
            "COMPLETED",
        ]

    async def test_event_order(self, coordinator, processor, sink, t0) -> None:
        trade_id = await supervised_trade(coordinator, processor, t0)
        await coordinator.approve_trade(trade_id, "mm_alice", None, t0 + timedelta(minutes=10))

        lifecycle_events = [
            e.type
            for e in sink.events
            if e.type not in (EventType.TRADE_STATUS_CHANGED, EventType.PAYMENT_HOLD_CREATED)
        ]
        assert lifecycle_events == [
            EventType.PAYMENT_VERIFIED,
            EventType.PAYMENT_VERIFIED,
            EventType.MIDDLEMAN_ASSIGNED,
            EventType.MIDDLEMAN_ACCEPTED,
            EventType.ESCROW_RELEASED,
        ]

    async def test_repeated_success_callback_is_a_noop(self, coordinator, processor, sink, t0) -> None:
        trade_id = await negotiated_trade(coordinator, t0)
        receipt = (await coordinator.initiate_payment(trade_id, CREATOR, t0)).unwrap()
        processor.capture(receipt.external_ref)

        for _ in range(2):
            result = await coordinator.confirm_payment_callback(
                receipt.external_ref, ProcessorOutcome.SUCCEEDED, receipt.amount_due, t0
            )
            assert result.unwrap() == TradeStatus.PAYMENT_PENDING

        assert len(sink.of_type(EventType.PAYMENT_VERIFIED)) == 1

    async def test_only_the_supervisor_approves(self, coordinator, processor, t0) -> None:
        trade_id = await supervised_trade(coordinator, processor, t0)
        result = await coordinator.approve_trade(trade_id, "mm_bob", None, t0 + timedelta(minutes=5))
        assert result.error == ErrorCode.PERMISSION_DENIED

    async def test_second_approval_is_rejected(self, coordinator, processor, t0) -> None:
        trade_id = await supervised_trade(coordinator, processor, t0)
        await coordinator.approve_trade(trade_id, "mm_alice", None, t0 + timedelta(minutes=5))
        again = await coordinator.approve_trade(trade_id, "mm_alice", None, t0 + timedelta(minutes=6))
        assert again.error == ErrorCode.STATE_CONFLICT
        assert processor.transfer_count == 1


# ============================================================
# Payment deadline
# ============================================================


class TestPaymentDeadline:
    async def test_partial_payment_is_refunded_at_deadline(self, coordinator, processor, sink, t0) -> None:
        trade_id = await negotiated_trade(coordinator, t0)
        receipt = (await coordinator.initiate_payment(trade_id, CREATOR, t0)).unwrap()
        processor.capture(receipt.external_ref)
        await coordinator.confirm_payment_callback(
            receipt.external_ref, ProcessorOutcome.SUCCEEDED, receipt.amount_due, t0
        )

        warning = (await coordinator.evaluate_deadline(trade_id, t0 + timedelta(minutes=29))).unwrap()
        assert warning.action == EnforcementActionType.WARNING
        assert warning.urgency == Urgency.CRITICAL
        payload = sink.of_type(EventType.PAYMENT_DEADLINE_WARNING)[0].payload
        assert payload["minutes_remaining"] == 1
        assert payload["channels"] == ["websocket", "email", "push"]
        assert payload["priority"] == "high"

        late = t0 + timedelta(minutes=31)
        evaluation = (await coordinator.evaluate_deadline(trade_id, late)).unwrap()

        assert evaluation.action == EnforcementActionType.REFUND
        assert evaluation.status == TradeStatus.REFUNDED
        snapshot = await coordinator.get_trade_snapshot(trade_id, now=late)
        assert snapshot.holds[0].status == HoldStatus.REFUNDED
        assert snapshot.completed_at == late
        assert processor.hold(receipt.external_ref).refunded
        assert sink.of_type(EventType.ESCROW_REFUNDED)[0].payload["reason"] == "payment_deadline"

    async def test_warning_band_notifies_over_websocket_and_email(self, coordinator, sink, t0) -> None:
        trade_id = await negotiated_trade(coordinator, t0)

        warning = (await coordinator.evaluate_deadline(trade_id, t0 + timedelta(minutes=20))).unwrap()

        assert warning.urgency == Urgency.HIGH
        payload = sink.of_type(EventType.PAYMENT_DEADLINE_WARNING)[0].payload
        assert payload["minutes_remaining"] == 10
        assert payload["channels"] == ["websocket", "email"]
        assert payload["priority"] == "normal"

    async def test_only_participant_paid_is_refunded_after_grace(self, coordinator, processor, sink, t0) -> None:
        trade_id = await negotiated_trade(coordinator, t0, price=2000)
        receipt = (await coordinator.initiate_payment(trade_id, PARTICIPANT, t0 + timedelta(minutes=4))).unwrap()
        # 2000 + 60 platform + (58 + 30) processor
        assert receipt.amount_due == 2148
        processor.capture(receipt.external_ref)
        await coordinator.confirm_payment_callback(
            receipt.external_ref, ProcessorOutcome.SUCCEEDED, receipt.amount_due, t0 + timedelta(minutes=5)
        )

        # deadline + 6 minutes: past the five minute grace period
        late = t0 + timedelta(minutes=36)
        evaluation = (await coordinator.evaluate_deadline(trade_id, late)).unwrap()

        assert evaluation.action == EnforcementActionType.REFUND
        assert evaluation.status == TradeStatus.REFUNDED
        snapshot = await coordinator.get_trade_snapshot(trade_id, now=late)
        assert [(h.role, h.status) for h in snapshot.holds] == [(HoldRole.PARTICIPANT, HoldStatus.REFUNDED)]
        assert snapshot.escrow_status == EscrowStatus.REFUNDED
        assert processor.refund_count == 1
        assert processor.transfer_count == 0
        refunded = sink.of_type(EventType.ESCROW_REFUNDED)
        assert [e.payload["holds"] for e in refunded] == [["participant"]]

    async def test_nobody_paid_is_cancelled(self, coordinator, t0) -> None:
        trade_id = await negotiated_trade(coordinator, t0)
        evaluation = (await coordinator.evaluate_deadline(trade_id, t0 + timedelta(minutes=36))).unwrap()
        assert evaluation.action == EnforcementActionType.CANCEL
        assert evaluation.status == TradeStatus.CANCELLED

    async def test_uncaptured_hold_is_voided_on_cancel(self, coordinator, processor, t0) -> None:
        trade_id = await negotiated_trade(coordinator, t0)
        receipt = (await coordinator.initiate_payment(trade_id, PARTICIPANT, t0)).unwrap()

        await coordinator.evaluate_deadline(trade_id, t0 + timedelta(minutes=40))

        snapshot = await coordinator.get_trade_snapshot(trade_id, now=t0)
        assert snapshot.status == TradeStatus.CANCELLED
        assert snapshot.holds[0].status == HoldStatus.VOIDED
        assert processor.hold(receipt.external_ref).cancelled

    async def test_capture_after_close_is_refunded(self, coordinator, processor, t0) -> None:
        trade_id = await negotiated_trade(coordinator, t0)
        receipt = (await coordinator.initiate_payment(trade_id, PARTICIPANT, t0)).unwrap()
        await coordinator.evaluate_deadline(trade_id, t0 + timedelta(minutes=40))

        processor.capture(receipt.external_ref)
        result = await coordinator.confirm_payment_callback(
            receipt.external_ref, ProcessorOutcome.SUCCEEDED, receipt.amount_due, t0 + timedelta(minutes=41)
        )

        assert result.unwrap() == TradeStatus.CANCELLED
        assert processor.hold(receipt.external_ref).refunded

    async def test_payment_landing_before_enforcement_wins(self, coordinator, processor, t0) -> None:
        trade_id = await negotiated_trade(coordinator, t0)
        for actor in (CREATOR, PARTICIPANT):
            receipt = (await coordinator.initiate_payment(trade_id, actor, t0)).unwrap()
            processor.capture(receipt.external_ref)

        # No callbacks arrived; the tracker re-verifies with the processor first.
        evaluation = (await coordinator.evaluate_deadline(trade_id, t0 + timedelta(minutes=31))).unwrap()

        assert evaluation.action == EnforcementActionType.NONE
        assert evaluation.status == TradeStatus.PAYMENT_COMPLETE
        snapshot = await coordinator.get_trade_snapshot(trade_id, now=t0)
        assert snapshot.assignment.middleman_id == "mm_alice"
        assert processor.refund_count == 0

    async def test_paying_after_deadline_is_refused(self, coordinator, t0) -> None:
        trade_id = await negotiated_trade(coordinator, t0)
        result = await coordinator.initiate_payment(trade_id, CREATOR, t0 + timedelta(minutes=30))
        assert result.error == ErrorCode.DEADLINE_EXPIRED

    async def test_viewer_cannot_pay(self, coordinator, t0) -> None:
        trade_id = await negotiated_trade(coordinator, t0)
        result = await coordinator.initiate_payment(trade_id, "user_spectator", t0)
        assert result.error == ErrorCode.PERMISSION_DENIED

    async def test_evaluation_outside_payment_pending(self, coordinator, processor, t0) -> None:
        trade_id = await supervised_trade(coordinator, processor, t0)
        evaluation = (await coordinator.evaluate_deadline(trade_id, t0 + timedelta(hours=2))).unwrap()
        assert evaluation.action == EnforcementActionType.NONE
        assert evaluation.status == TradeStatus.IN_PROGRESS


# ============================================================
# Rejection & escalation
# ============================================================


class TestRejection:
    async def test_reject_cancels_and_refunds_both(self, coordinator, processor, t0) -> None:
        trade_id = await supervised_trade(coordinator, processor, t0)

        result = await coordinator.reject_trade(trade_id, "mm_alice", "wrong item", t0 + timedelta(minutes=8))

        assert result.unwrap() == TradeStatus.CANCELLED
        snapshot = await coordinator.get_trade_snapshot(trade_id, now=t0)
        assert snapshot.escrow_status == EscrowStatus.REFUNDED
        assert {h.status for h in snapshot.holds} == {HoldStatus.REFUNDED}
        assert processor.refund_count == 2
        assert processor.transfer_count == 0

    async def test_scam_report_cancels_and_refunds(self, coordinator, processor, t0) -> None:
        trade_id = await supervised_trade(coordinator, processor, t0)

        outcome = (
            await coordinator.report_issue(
                trade_id, "mm_alice", IssueType.SCAM_ATTEMPT, "fake item", t0 + timedelta(minutes=8)
            )
        ).unwrap()

        assert outcome.escalated
        assert outcome.status == TradeStatus.CANCELLED
        assert processor.refund_count == 2


# ============================================================
# Failure atomicity
# ============================================================


class TestRollback:
    async def test_processor_fault_during_release_rolls_back(self, session_factory, roster, sink, t0) -> None:
        processor = BrokenTransferProcessor()
        coordinator = TradeCoordinator(session_factory, processor=processor, roster=roster, sink=sink)
        trade_id = await supervised_trade(coordinator, processor, t0)
        sink.events.clear()

        with pytest.raises(PaymentProcessorError):
            await coordinator.approve_trade(trade_id, "mm_alice", None, t0 + timedelta(minutes=5))

        snapshot = await coordinator.get_trade_snapshot(trade_id, now=t0 + timedelta(minutes=5))
        assert snapshot.status == TradeStatus.IN_PROGRESS
        assert snapshot.escrow_status == EscrowStatus.HELD
        assert snapshot.supervision.decision is None
        assert sink.events == []

    async def test_refused_release_raises_invariant_error(
        self, coordinator, processor, sink, monkeypatch, t0
    ) -> None:
        trade_id = await supervised_trade(coordinator, processor, t0)

        async def refuse(self, trade, now=None):
            return Result.failure(ErrorCode.STATE_CONFLICT, "hold moved")

        monkeypatch.setattr(EscrowLedger, "release", refuse)

        with pytest.raises(EscrowInvariantError, match="release was refused"):
            await coordinator.approve_trade(trade_id, "mm_alice", None, t0 + timedelta(minutes=5))

        snapshot = await coordinator.get_trade_snapshot(trade_id, now=t0)
        assert snapshot.status == TradeStatus.IN_PROGRESS
        assert EventType.ESCROW_RELEASED not in sink.types()


# ============================================================
# Snapshot
# ============================================================


class TestSnapshot:
    async def test_payment_pending_snapshot(self, coordinator, t0) -> None:
        trade_id = await negotiated_trade(coordinator, t0)

        snapshot = await coordinator.get_trade_snapshot(trade_id, PARTICIPANT, t0 + timedelta(minutes=20))

        assert snapshot.viewer_role == ActorRole.PARTICIPANT
        assert snapshot.allowed_actions == [TradeAction.MESSAGE, TradeAction.PAY]
        assert snapshot.fees == {"subtotal": 5000, "platform_fee": 150, "processor_fee": 175, "total": 5325}
        assert snapshot.deadline.time_remaining == "10m 0s"
        assert snapshot.deadline.urgency == Urgency.HIGH
        assert snapshot.deadline.seconds_remaining == 600
        assert snapshot.next_statuses == [
            TradeStatus.PAYMENT_COMPLETE,
            TradeStatus.CANCELLED,
            TradeStatus.REFUNDED,
        ]
        assert snapshot.progress_percentage == 50
        assert snapshot.escrow_status == EscrowStatus.PENDING

    async def test_snapshot_never_calls_the_processor(self, coordinator, processor, t0) -> None:
        trade_id = await paid_trade(coordinator, processor, t0)
        processor.available = False

        snapshot = await coordinator.get_trade_snapshot(trade_id, "user_spectator", t0)

        assert snapshot.viewer_role == ActorRole.VIEWER
        assert snapshot.allowed_actions == []
        assert snapshot.escrow_status == EscrowStatus.HELD


# ============================================================
# Concurrent calls on one trade
# ============================================================


class TestConcurrentCalls:
    async def test_simultaneous_success_callbacks_complete_once(self, coordinator, processor, sink, t0) -> None:
        trade_id = await negotiated_trade(coordinator, t0)
        receipts = [
            (await coordinator.initiate_payment(trade_id, actor, t0)).unwrap() for actor in (CREATOR, PARTICIPANT)
        ]
        for receipt in receipts:
            processor.capture(receipt.external_ref)

        results = await asyncio.gather(
            *(
                coordinator.confirm_payment_callback(
                    r.external_ref, ProcessorOutcome.SUCCEEDED, r.amount_due, t0 + timedelta(minutes=1)
                )
                for r in receipts
            )
        )

        assert all(r.ok for r in results)
        completions = [
            e for e in sink.of_type(EventType.TRADE_STATUS_CHANGED) if e.payload["to"] == TradeStatus.PAYMENT_COMPLETE
        ]
        assert len(completions) == 1
        assert len(sink.of_type(EventType.MIDDLEMAN_ASSIGNED)) == 1
        trail = [e.new_status for e in await coordinator.get_audit_trail(trade_id)]
        assert trail.count(TradeStatus.PAYMENT_COMPLETE) == 1

    async def test_duplicate_payment_requests_open_one_hold(self, coordinator, t0) -> None:
        trade_id = await negotiated_trade(coordinator, t0)

        results = await asyncio.gather(
            coordinator.initiate_payment(trade_id, CREATOR, t0),
            coordinator.initiate_payment(trade_id, CREATOR, t0),
        )

        assert sorted(r.ok for r in results) == [False, True]
        assert [r.error for r in results if not r.ok] == [ErrorCode.DUPLICATE_PAYMENT]

    @pytest.mark.parametrize("accept_first", [True, False])
    async def test_accept_racing_expire_settles_one_way(self, coordinator, processor, accept_first, t0) -> None:
        trade_id = await paid_trade(coordinator, processor, t0)
        accept = coordinator.accept_assignment(trade_id, "mm_alice", t0 + timedelta(minutes=14))
        expire = coordinator.expire_assignment(trade_id, t0 + timedelta(minutes=16))

        if accept_first:
            accepted, expired = await asyncio.gather(accept, expire)
        else:
            expired, accepted = await asyncio.gather(expire, accept)

        assert accepted.ok != expired
        snapshot = await coordinator.get_trade_snapshot(trade_id, now=t0 + timedelta(minutes=16))
        trail = await coordinator.get_audit_trail(trade_id)
        if accepted.ok:
            assert snapshot.status == TradeStatus.IN_PROGRESS
            assert snapshot.assignment.middleman_id == "mm_alice"
            assert snapshot.assignment.status == AssignmentStatus.ACCEPTED
            assert snapshot.supervision is not None
        else:
            assert accepted.error == ErrorCode.PERMISSION_DENIED
            assert snapshot.status == TradeStatus.PAYMENT_COMPLETE
            assert snapshot.assignment.middleman_id == "mm_bob"
            assert snapshot.supervision is None
        assert [e.new_status for e in trail].count(TradeStatus.IN_PROGRESS) == int(accepted.ok)
