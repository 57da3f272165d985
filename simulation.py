#!/usr/bin/env python3
"""Middleman Escrow — End-to-End Simulation.

Drives the escrow core through three scenarios with a simulated payment
processor and a fixed middleman roster. Every step passes an explicit
clock, so deadlines and timeouts fire without waiting.

    Scenario 1: Happy Path
        - Seller lists an item, buyer joins, both agree
        - Both holds are captured -> PAYMENT_COMPLETE
        - Middleman accepts, supervises, approves -> COMPLETED + released

    Scenario 2: Missed Payment Deadline
        - Only the seller pays within the 30 minute window
        - Warning at T+29, refund at T+31 -> REFUNDED

    Scenario 3: Reassignment and Scam Report
        - First middleman declines, the second lets the offer time out
        - Third middleman accepts and reports a scam attempt -> CANCELLED + refunded

Usage:
    # Option A: With Docker (PostgreSQL):
    docker compose up -d
    uv run python simulation.py

    # Option B: Without Docker (SQLite in-memory):
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --sqlite --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
from datetime import UTC, datetime, timedelta

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from middleman_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from middleman_escrow.domain.dispatch import MiddlemanCandidate  # noqa: E402
from middleman_escrow.domain.enums import IssueType, ProcessorOutcome  # noqa: E402
from middleman_escrow.orchestration.coordinator import TradeCoordinator  # noqa: E402
from middleman_escrow.services.events import LoggingEventSink  # noqa: E402
from middleman_escrow.services.payment_processor import SimulatedPaymentProcessor  # noqa: E402
from middleman_escrow.services.roster import StaticRoster  # noqa: E402

SELLER = "seller_sam"
BUYER = "buyer_bea"

ROSTER = StaticRoster(
    [
        MiddlemanCandidate("mm_alice", True, 0, 4.0, 4.9),
        MiddlemanCandidate("mm_bob", True, 1, 3.0, 4.8),
        MiddlemanCandidate("mm_carol", True, 2, 6.0, 4.5),
    ]
)

# Module-level state
_engine = None
_session_factory = None


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False) -> None:
    """Initialize database engine and create tables."""
    global _engine, _session_factory

    from middleman_escrow.infrastructure.database.engine import (
        build_engine,
        build_session_factory,
        create_schema,
        get_session_factory,
        init_db,
    )

    if use_sqlite:
        _engine = build_engine("sqlite+aiosqlite:///:memory:")
        await create_schema(_engine)
        _session_factory = build_session_factory(_engine)
        logger.info("database.sqlite_initialized")
    else:
        await init_db()
        _session_factory = get_session_factory()


async def shutdown_database() -> None:
    """Close database connections."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
    else:
        from middleman_escrow.infrastructure.database.engine import close_db

        await close_db()
    _session_factory = None


def new_coordinator(processor: SimulatedPaymentProcessor) -> TradeCoordinator:
    return TradeCoordinator(
        _session_factory,
        processor=processor,
        roster=ROSTER,
        sink=LoggingEventSink(),
    )


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------
def banner(title: str) -> None:
    print("\n" + "=" * 70)
    print(f"  {title}")
    print("=" * 70)


def section(title: str) -> None:
    print(f"\n--- {title} ---")


async def print_snapshot(coordinator: TradeCoordinator, trade_id, now: datetime) -> None:
    snapshot = await coordinator.get_trade_snapshot(trade_id, now=now)
    print(f"\n  Trade {snapshot.trade_id}")
    print(f"  Status:  {snapshot.status} ({snapshot.status_description})")
    print(f"  Escrow:  {snapshot.escrow_status}")
    for hold in snapshot.holds:
        print(f"    {hold.role:<12} {hold.status:<9} {hold.amount_minor} minor units")
    if snapshot.assignment is not None:
        print(f"  Offer:   {snapshot.assignment.middleman_id} ({snapshot.assignment.status})")
    if snapshot.supervision is not None:
        print(f"  Review:  {snapshot.supervision.middleman_id} -> {snapshot.supervision.decision}")


async def print_audit_trail(coordinator: TradeCoordinator, trade_id) -> None:
    section("Audit Trail")
    for event in await coordinator.get_audit_trail(trade_id):
        old = event.old_status or "-"
        print(f"  {old:>16} -> {event.new_status:<16} by {event.actor}")


async def open_trade(coordinator: TradeCoordinator, now: datetime, item: str, price: int):
    """List, join and agree. Returns the trade id in PAYMENT_PENDING."""
    snapshot = await coordinator.create_trade(
        creator_id=SELLER, item_name=item, price_minor=price, now=now
    )
    trade_id = snapshot.trade_id
    logger.info("SELLER: Trade listed", trade_id=str(trade_id), item=item, price=price)

    await coordinator.join_trade(trade_id, BUYER, now)
    await coordinator.agree_terms(trade_id, SELLER, now)
    status = (await coordinator.agree_terms(trade_id, BUYER, now)).unwrap()
    logger.info("BOTH: Terms agreed", trade_id=str(trade_id), status=str(status))
    return trade_id


async def pay(
    coordinator: TradeCoordinator,
    processor: SimulatedPaymentProcessor,
    trade_id,
    actor: str,
    now: datetime,
) -> None:
    receipt = (await coordinator.initiate_payment(trade_id, actor, now)).unwrap()
    processor.capture(receipt.external_ref)
    status = (
        await coordinator.confirm_payment_callback(
            receipt.external_ref, ProcessorOutcome.SUCCEEDED, receipt.amount_due, now
        )
    ).unwrap()
    logger.info(
        "PAYMENT: Hold captured",
        actor=actor,
        amount=receipt.amount_due,
        trade_status=str(status),
    )


# ===========================================================================
# Scenarios
# ===========================================================================
async def scenario_1_happy_path() -> None:
    banner("SCENARIO 1: Happy Path")
    processor = SimulatedPaymentProcessor()
    coordinator = new_coordinator(processor)
    t0 = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

    section("Negotiation")
    trade_id = await open_trade(coordinator, t0, "Dragon sword", 10000)

    section("Payment")
    await pay(coordinator, processor, trade_id, SELLER, t0 + timedelta(minutes=3))
    await pay(coordinator, processor, trade_id, BUYER, t0 + timedelta(minutes=5))

    section("Supervision")
    started = (
        await coordinator.accept_assignment(trade_id, "mm_alice", t0 + timedelta(minutes=8))
    ).unwrap()
    logger.info("MIDDLEMAN: Offer accepted", middleman_id="mm_alice", status=str(started))
    done = (
        await coordinator.approve_trade(
            trade_id, "mm_alice", "Exchange verified in-game", t0 + timedelta(minutes=20)
        )
    ).unwrap()
    logger.info("MIDDLEMAN: Trade approved", status=str(done))

    await print_snapshot(coordinator, trade_id, t0 + timedelta(minutes=20))
    await print_audit_trail(coordinator, trade_id)


async def scenario_2_missed_deadline() -> None:
    banner("SCENARIO 2: Missed Payment Deadline")
    processor = SimulatedPaymentProcessor()
    coordinator = new_coordinator(processor)
    t0 = datetime(2025, 3, 1, 14, 0, tzinfo=UTC)

    trade_id = await open_trade(coordinator, t0, "Rare mount", 25000)

    section("Only the seller pays")
    await pay(coordinator, processor, trade_id, SELLER, t0 + timedelta(minutes=2))

    section("Deadline tracker")
    for minutes in (10, 20, 29, 31):
        evaluation = (
            await coordinator.evaluate_deadline(trade_id, t0 + timedelta(minutes=minutes))
        ).unwrap()
        print(
            f"  T+{minutes:<3} action={evaluation.action:<8} "
            f"urgency={evaluation.urgency:<9} status={evaluation.status}"
        )

    await print_snapshot(coordinator, trade_id, t0 + timedelta(minutes=31))
    await print_audit_trail(coordinator, trade_id)


async def scenario_3_reassignment_and_scam() -> None:
    banner("SCENARIO 3: Reassignment and Scam Report")
    processor = SimulatedPaymentProcessor()
    coordinator = new_coordinator(processor)
    t0 = datetime(2025, 3, 1, 16, 0, tzinfo=UTC)

    trade_id = await open_trade(coordinator, t0, "Legendary shield", 8000)
    await pay(coordinator, processor, trade_id, SELLER, t0 + timedelta(minutes=1))
    await pay(coordinator, processor, trade_id, BUYER, t0 + timedelta(minutes=1))

    section("Offers")
    declined = (
        await coordinator.decline_assignment(
            trade_id, "mm_alice", "End of shift", t0 + timedelta(minutes=2)
        )
    ).unwrap()
    print(f"  mm_alice declined, offered to {declined.reassigned_to}")

    report = await coordinator.sweep(t0 + timedelta(minutes=20))
    print(f"  sweep at T+20: {report.assignments_expired} offer(s) timed out")

    status = (
        await coordinator.accept_assignment(trade_id, "mm_carol", t0 + timedelta(minutes=22))
    ).unwrap()
    print(f"  mm_carol accepted, trade is {status}")

    section("Issue report")
    outcome = (
        await coordinator.report_issue(
            trade_id,
            "mm_carol",
            IssueType.SCAM_ATTEMPT,
            "Buyer offered a counterfeit item",
            t0 + timedelta(minutes=30),
        )
    ).unwrap()
    print(f"  escalated={outcome.escalated} status={outcome.status}")
    print(f"  refunds issued by the processor: {processor.refund_count}")

    await print_snapshot(coordinator, trade_id, t0 + timedelta(minutes=30))
    await print_audit_trail(coordinator, trade_id)


SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_missed_deadline,
    3: scenario_3_reassignment_and_scam,
}


# ===========================================================================
# Main
# ===========================================================================
async def run(scenario: int = 0, use_sqlite: bool = False) -> None:
    """Run one scenario, or all of them in order when ``scenario`` is 0."""
    if scenario and scenario not in SCENARIOS:
        print(f"Unknown scenario {scenario}. Available: {', '.join(map(str, SCENARIOS))}")
        return

    await init_database(use_sqlite=use_sqlite)
    try:
        db_type = "SQLite (in-memory)" if use_sqlite else "PostgreSQL"
        print("\n  MIDDLEMAN ESCROW — SIMULATION")
        print(f"  Database: {db_type}")

        for num, func in SCENARIOS.items():
            if scenario in (0, num):
                await func()

        print("\n" + "=" * 70)
        print("  ALL SCENARIOS COMPLETED")
        print("=" * 70 + "\n")
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Middleman Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use SQLite in-memory instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()

    asyncio.run(run(args.scenario, use_sqlite=args.sqlite))
