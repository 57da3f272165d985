"""Orchestration layer — the TradeCoordinator facade and the periodic sweeper."""

from middleman_escrow.orchestration.coordinator import (
    DeadlineEvaluation,
    DeclineOutcome,
    IssueOutcome,
    SweepReport,
    TradeCoordinator,
)
from middleman_escrow.orchestration.snapshots import TradeSnapshot
from middleman_escrow.orchestration.sweeper import run_sweeper

__all__ = [
    "DeadlineEvaluation",
    "DeclineOutcome",
    "IssueOutcome",
    "SweepReport",
    "TradeCoordinator",
    "TradeSnapshot",
    "run_sweeper",
]
