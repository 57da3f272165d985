"""Tests for the TradeLifecycleMachine domain guard.

These tests verify that:
    1. Every edge in the adjacency table is allowed and fires on the machine.
    2. Every pair outside the table is INVALID_TRANSITION.
    3. Edges with a business predicate return REQUIREMENT_NOT_MET when it fails.
    4. Terminal statuses have no outgoing edges.
"""

from __future__ import annotations

import itertools
import warnings

import pytest
from statemachine.exceptions import TransitionNotAllowed

from middleman_escrow.domain.enums import TradeStatus
from middleman_escrow.domain.results import ErrorCode
from middleman_escrow.domain.state_machine import (
    TradeLifecycleMachine,
    TransitionContext,
    apply_transition,
    can_transition,
    is_terminal,
    next_statuses,
    progress_percentage,
    status_description,
    validate_transition,
)

S = TradeStatus

ADJACENCY = {
    S.ACTIVE: {S.NEGOTIATING, S.CANCELLED},
    S.NEGOTIATING: {S.PAYMENT_PENDING, S.CANCELLED, S.ACTIVE},
    S.PAYMENT_PENDING: {S.PAYMENT_COMPLETE, S.REFUNDED, S.CANCELLED},
    S.PAYMENT_COMPLETE: {S.IN_PROGRESS, S.REFUNDED},
    S.IN_PROGRESS: {S.COMPLETED, S.CANCELLED},
    S.COMPLETED: set(),
    S.CANCELLED: set(),
    S.REFUNDED: set(),
}

ALL_FACTS = TransitionContext(
    has_participant=True,
    terms_agreed=True,
    both_paid=True,
    has_accepted_assignment=True,
    middleman_approved=True,
)

ALL_PAIRS = list(itertools.product(TradeStatus, TradeStatus))


class TestAdjacencyTable:
    @pytest.mark.parametrize(("source", "target"), ALL_PAIRS)
    def test_can_transition_matches_table(self, source: S, target: S) -> None:
        assert can_transition(source, target) is (target in ADJACENCY[source])

    @pytest.mark.parametrize(("source", "target"), ALL_PAIRS)
    def test_validate_with_all_facts(self, source: S, target: S) -> None:
        result = validate_transition(source, target, ALL_FACTS)
        if target in ADJACENCY[source]:
            assert result.ok
            assert result.unwrap() == target
        else:
            assert result.error == ErrorCode.INVALID_TRANSITION

    @pytest.mark.parametrize(
        ("source", "target"),
        [(s, t) for s, targets in ADJACENCY.items() for t in targets],
    )
    def test_machine_fires_every_edge(self, source: S, target: S) -> None:
        assert apply_transition(source, target) == target

    def test_next_statuses(self) -> None:
        for status, targets in ADJACENCY.items():
            assert set(next_statuses(status)) == targets

    def test_terminal_statuses(self) -> None:
        terminal = {s for s in TradeStatus if is_terminal(s)}
        assert terminal == {S.COMPLETED, S.CANCELLED, S.REFUNDED}


class TestRequirements:
    @pytest.mark.parametrize(
        ("source", "target", "missing"),
        [
            (S.ACTIVE, S.NEGOTIATING, "has_participant"),
            (S.NEGOTIATING, S.PAYMENT_PENDING, "terms_agreed"),
            (S.PAYMENT_PENDING, S.PAYMENT_COMPLETE, "both_paid"),
            (S.PAYMENT_COMPLETE, S.IN_PROGRESS, "has_accepted_assignment"),
            (S.IN_PROGRESS, S.COMPLETED, "middleman_approved"),
        ],
    )
    def test_missing_fact_is_requirement_not_met(
        self, source: S, target: S, missing: str
    ) -> None:
        facts = {
            "has_participant": True,
            "terms_agreed": True,
            "both_paid": True,
            "has_accepted_assignment": True,
            "middleman_approved": True,
        }
        facts[missing] = False
        result = validate_transition(source, target, TransitionContext(**facts))
        assert result.error == ErrorCode.REQUIREMENT_NOT_MET

    def test_structural_check_comes_first(self) -> None:
        result = validate_transition(S.ACTIVE, S.COMPLETED, TransitionContext())
        assert result.error == ErrorCode.INVALID_TRANSITION

    def test_unguarded_edges_need_no_facts(self) -> None:
        assert validate_transition(S.NEGOTIATING, S.ACTIVE, TransitionContext()).ok
        assert validate_transition(S.PAYMENT_PENDING, S.REFUNDED, TransitionContext()).ok
        assert validate_transition(S.IN_PROGRESS, S.CANCELLED, TransitionContext()).ok


class TestMachine:
    def test_happy_path(self) -> None:
        sm = TradeLifecycleMachine("ACTIVE")
        sm.participant_joined()
        sm.terms_agreed()
        sm.payments_verified()
        sm.supervision_started()
        sm.middleman_approved()
        assert sm.status == S.COMPLETED

    def test_illegal_event_raises(self) -> None:
        sm = TradeLifecycleMachine("ACTIVE")
        with pytest.raises(TransitionNotAllowed):
            sm.middleman_approved()

    def test_completed_cannot_be_cancelled(self) -> None:
        sm = TradeLifecycleMachine("COMPLETED")
        with pytest.raises(TransitionNotAllowed):
            sm.trade_cancelled()

    def test_invalid_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            TradeLifecycleMachine("SHIPPED")

    def test_apply_rejects_unknown_edge(self) -> None:
        with pytest.raises(ValueError, match="No event"):
            apply_transition(S.COMPLETED, S.ACTIVE)

    def test_reading_status_raises_no_deprecation_warning(self) -> None:
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            sm = TradeLifecycleMachine("PAYMENT_PENDING")
            sm.payments_verified()
            assert sm.status == S.PAYMENT_COMPLETE
            assert apply_transition(S.PAYMENT_COMPLETE, S.REFUNDED) == S.REFUNDED


class TestDescriptions:
    def test_every_status_is_described(self) -> None:
        for status in TradeStatus:
            assert status_description(status)

    def test_progress(self) -> None:
        assert progress_percentage(S.ACTIVE) == 10
        assert progress_percentage(S.PAYMENT_PENDING) == 50
        assert progress_percentage(S.COMPLETED) == 100
        assert progress_percentage(S.REFUNDED) == 0
