"""Tests for TradeLifecycle: negotiation, guarded transitions and the audit trail."""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from conftest import CREATOR, PARTICIPANT

from middleman_escrow.domain.enums import EventType, TradeStatus
from middleman_escrow.domain.exceptions import TradeNotFoundError
from middleman_escrow.domain.results import ErrorCode
from middleman_escrow.services.trade_lifecycle import TradeLifecycle


@pytest.fixture
async def trade_id(coordinator):
    snapshot = await coordinator.create_trade(
        creator_id=CREATOR, item_name="  Golden helm  ", price_minor=2500
    )
    return snapshot.trade_id


# ============================================================
# Creation
# ============================================================


class TestCreate:
    async def test_new_trade_is_active(self, coordinator, trade_id, sink) -> None:
        snapshot = await coordinator.get_trade_snapshot(trade_id, CREATOR)
        assert snapshot.status == TradeStatus.ACTIVE
        assert snapshot.item_name == "Golden helm"
        assert snapshot.participant_id is None
        assert snapshot.payment_deadline is None
        assert sink.events == []

    @pytest.mark.parametrize("price", [0, -1])
    async def test_non_positive_price_is_rejected(self, coordinator, price) -> None:
        with pytest.raises(ValueError, match="price_minor"):
            await coordinator.create_trade(creator_id=CREATOR, item_name="x", price_minor=price)

    async def test_blank_item_name_is_rejected(self, coordinator) -> None:
        with pytest.raises(ValueError, match="item_name"):
            await coordinator.create_trade(creator_id=CREATOR, item_name="  ", price_minor=10)

    async def test_creation_is_audited(self, coordinator, trade_id) -> None:
        trail = await coordinator.get_audit_trail(trade_id)
        assert len(trail) == 1
        assert trail[0].old_status is None
        assert trail[0].new_status == "ACTIVE"
        assert trail[0].actor == CREATOR

    async def test_unknown_trade(self, coordinator) -> None:
        with pytest.raises(TradeNotFoundError):
            await coordinator.get_audit_trail(uuid.uuid4())


# ============================================================
# Negotiation
# ============================================================


class TestNegotiation:
    async def test_first_join_binds_participant(self, coordinator, trade_id, sink, t0) -> None:
        joined = (await coordinator.join_trade(trade_id, PARTICIPANT, t0)).unwrap()
        assert joined.bound
        assert joined.status == TradeStatus.NEGOTIATING

        snapshot = await coordinator.get_trade_snapshot(trade_id, PARTICIPANT, t0)
        assert snapshot.participant_id == PARTICIPANT
        assert sink.types() == [EventType.TRADE_STATUS_CHANGED]
        assert sink.events[0].payload == {"from": "ACTIVE", "to": "NEGOTIATING"}

    async def test_later_join_is_social(self, coordinator, trade_id, t0) -> None:
        await coordinator.join_trade(trade_id, PARTICIPANT, t0)
        joined = (await coordinator.join_trade(trade_id, "user_spectator", t0)).unwrap()
        assert not joined.bound

        snapshot = await coordinator.get_trade_snapshot(trade_id, now=t0)
        assert snapshot.participant_id == PARTICIPANT

    async def test_creator_cannot_join_own_trade(self, coordinator, trade_id, t0) -> None:
        result = await coordinator.join_trade(trade_id, CREATOR, t0)
        assert result.error == ErrorCode.PERMISSION_DENIED

    async def test_one_agreement_is_not_enough(self, coordinator, trade_id, t0) -> None:
        await coordinator.join_trade(trade_id, PARTICIPANT, t0)
        result = await coordinator.agree_terms(trade_id, CREATOR, t0)
        assert result.unwrap() == TradeStatus.NEGOTIATING

    async def test_both_agreements_start_the_payment_window(self, coordinator, trade_id, t0) -> None:
        await coordinator.join_trade(trade_id, PARTICIPANT, t0)
        await coordinator.agree_terms(trade_id, CREATOR, t0)
        # Agreeing twice is harmless.
        await coordinator.agree_terms(trade_id, CREATOR, t0)
        result = await coordinator.agree_terms(trade_id, PARTICIPANT, t0 + timedelta(minutes=2))

        assert result.unwrap() == TradeStatus.PAYMENT_PENDING
        snapshot = await coordinator.get_trade_snapshot(trade_id, now=t0)
        assert snapshot.payment_deadline == t0 + timedelta(minutes=32)

    async def test_viewer_cannot_agree(self, coordinator, trade_id, t0) -> None:
        await coordinator.join_trade(trade_id, PARTICIPANT, t0)
        result = await coordinator.agree_terms(trade_id, "user_spectator", t0)
        assert result.error == ErrorCode.PERMISSION_DENIED

    async def test_agree_before_anyone_joined(self, coordinator, trade_id, t0) -> None:
        result = await coordinator.agree_terms(trade_id, CREATOR, t0)
        assert result.error == ErrorCode.INVALID_TRANSITION

    async def test_leave_reopens_the_trade(self, coordinator, trade_id, t0) -> None:
        await coordinator.join_trade(trade_id, PARTICIPANT, t0)
        await coordinator.agree_terms(trade_id, CREATOR, t0)

        result = await coordinator.leave_trade(trade_id, PARTICIPANT, t0)

        assert result.unwrap() == TradeStatus.ACTIVE
        snapshot = await coordinator.get_trade_snapshot(trade_id, now=t0)
        assert snapshot.participant_id is None
        assert not snapshot.creator_agreed

    async def test_only_participant_can_leave(self, coordinator, trade_id, t0) -> None:
        await coordinator.join_trade(trade_id, PARTICIPANT, t0)
        result = await coordinator.leave_trade(trade_id, CREATOR, t0)
        assert result.error == ErrorCode.PERMISSION_DENIED


# ============================================================
# Cancellation & conflicts
# ============================================================


class TestCancel:
    async def test_creator_cancels_active_trade(self, coordinator, trade_id, t0) -> None:
        result = await coordinator.cancel_trade(trade_id, CREATOR, t0)
        assert result.unwrap() == TradeStatus.CANCELLED

        snapshot = await coordinator.get_trade_snapshot(trade_id, now=t0)
        assert snapshot.completed_at == t0
        trail = await coordinator.get_audit_trail(trade_id)
        assert trail[-1].metadata_json == {"reason": "cancelled_by_party"}

    async def test_viewer_cannot_cancel(self, coordinator, trade_id, t0) -> None:
        result = await coordinator.cancel_trade(trade_id, "user_spectator", t0)
        assert result.error == ErrorCode.PERMISSION_DENIED

    async def test_no_party_cancel_once_payment_is_pending(self, coordinator, trade_id, t0) -> None:
        await coordinator.join_trade(trade_id, PARTICIPANT, t0)
        await coordinator.agree_terms(trade_id, CREATOR, t0)
        await coordinator.agree_terms(trade_id, PARTICIPANT, t0)
        result = await coordinator.cancel_trade(trade_id, CREATOR, t0)
        assert result.error == ErrorCode.PERMISSION_DENIED

    async def test_stale_writer_gets_state_conflict(
        self, coordinator, session_factory, publisher, trade_id, t0
    ) -> None:
        async with session_factory() as stale_session:
            lifecycle = TradeLifecycle(stale_session, publisher)
            stale = await lifecycle.get(trade_id)
            await stale_session.commit()

            assert (await coordinator.cancel_trade(trade_id, CREATOR, t0)).ok

            result = await lifecycle.transition(stale, TradeStatus.CANCELLED, now=t0)
            await stale_session.commit()

        assert result.error == ErrorCode.STATE_CONFLICT
        assert stale.status == TradeStatus.CANCELLED.value
        assert publisher.pending == []
