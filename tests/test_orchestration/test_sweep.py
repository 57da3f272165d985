"""Tests for the periodic sweep and its background loop."""

from __future__ import annotations

import asyncio
from datetime import timedelta

from conftest import negotiated_trade, paid_trade, supervised_trade
from sqlalchemy.exc import OperationalError

from middleman_escrow.domain.enums import AssignmentStatus, SupervisionStatus, TradeStatus
from middleman_escrow.orchestration.coordinator import TradeCoordinator
from middleman_escrow.orchestration.sweeper import run_sweeper
from middleman_escrow.services.roster import DatabaseRoster


class TestSweep:
    async def test_sweep_enforces_deadlines_and_offer_timeouts(self, coordinator, processor, t0) -> None:
        unpaid = await negotiated_trade(coordinator, t0)
        waiting = await paid_trade(coordinator, processor, t0)

        report = await coordinator.sweep(t0 + timedelta(minutes=40))

        assert report.deadlines_evaluated == 1
        assert report.trades_cancelled == 1
        assert report.assignments_expired == 1
        assert report.errors == 0

        assert (await coordinator.get_trade_snapshot(unpaid, now=t0)).status == TradeStatus.CANCELLED
        reassigned = await coordinator.get_trade_snapshot(waiting, now=t0 + timedelta(minutes=40))
        assert reassigned.assignment.middleman_id == "mm_bob"
        assert reassigned.assignment.status == AssignmentStatus.PENDING

    async def test_sweep_escalates_stale_supervision(self, coordinator, processor, t0) -> None:
        trade_id = await supervised_trade(coordinator, processor, t0)

        report = await coordinator.sweep(t0 + timedelta(hours=2))

        assert report.supervisions_escalated == 1
        snapshot = await coordinator.get_trade_snapshot(trade_id, now=t0 + timedelta(hours=2))
        assert snapshot.supervision.status == SupervisionStatus.TIMED_OUT
        assert snapshot.status == TradeStatus.IN_PROGRESS

    async def test_sweep_retries_unassigned_trades(self, session_factory, processor, sink, t0) -> None:
        coordinator = TradeCoordinator(session_factory, processor=processor, roster=DatabaseRoster(), sink=sink)
        trade_id = await paid_trade(coordinator, processor, t0)
        assert (await coordinator.get_trade_snapshot(trade_id, now=t0)).assignment is None

        await coordinator.register_middleman("mm_late", "Late Larry")
        report = await coordinator.sweep(t0 + timedelta(minutes=5))

        assert report.assignments_requested == 1
        snapshot = await coordinator.get_trade_snapshot(trade_id, now=t0)
        assert snapshot.assignment.middleman_id == "mm_late"

    async def test_sweep_is_idempotent(self, coordinator, t0) -> None:
        await negotiated_trade(coordinator, t0)
        later = t0 + timedelta(minutes=40)

        first = await coordinator.sweep(later)
        second = await coordinator.sweep(later)

        assert first.trades_cancelled == 1
        assert second.deadlines_evaluated == 0

    async def test_database_fault_on_one_trade_does_not_stop_the_pass(self, coordinator, t0, monkeypatch) -> None:
        broken = await negotiated_trade(coordinator, t0)
        healthy = await negotiated_trade(coordinator, t0)
        evaluate = coordinator.evaluate_deadline

        async def flaky_evaluate(trade_id, now=None):
            if trade_id == broken:
                raise OperationalError("UPDATE trades", {}, Exception("database is locked"))
            return await evaluate(trade_id, now)

        monkeypatch.setattr(coordinator, "evaluate_deadline", flaky_evaluate)
        report = await coordinator.sweep(t0 + timedelta(minutes=40))

        assert report.errors == 1
        assert report.trades_cancelled == 1
        assert (await coordinator.get_trade_snapshot(healthy, now=t0)).status == TradeStatus.CANCELLED
        assert (await coordinator.get_trade_snapshot(broken, now=t0)).status == TradeStatus.PAYMENT_PENDING


class FlakyCoordinator:
    """Fails the first sweep, then stops the loop on the second."""

    def __init__(self, stop: asyncio.Event) -> None:
        self.stop = stop
        self.calls = 0

    async def sweep(self):
        self.calls += 1
        if self.calls == 1:
            raise ConnectionError("database unavailable")
        self.stop.set()


async def test_sweeper_survives_a_failed_pass() -> None:
    stop = asyncio.Event()
    coordinator = FlakyCoordinator(stop)

    await asyncio.wait_for(run_sweeper(coordinator, 0.01, stop), timeout=5)

    assert coordinator.calls == 2


async def test_sweeper_stops_promptly() -> None:
    stop = asyncio.Event()
    coordinator = FlakyCoordinator(stop)
    coordinator.calls = 1
    task = asyncio.create_task(run_sweeper(coordinator, 3600, stop))

    await asyncio.wait_for(task, timeout=5)

    assert coordinator.calls == 2
