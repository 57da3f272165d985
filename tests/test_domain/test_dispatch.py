"""Tests for middleman selection and timeout arithmetic."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from middleman_escrow.domain.dispatch import (
    DispatchPolicy,
    MiddlemanCandidate,
    check_assignment_timeout,
    eligible_candidates,
    estimate_response_minutes,
    select_middleman,
    supervision_guidelines,
    supervision_status,
)
from middleman_escrow.domain.enums import SupervisionStatus

T = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def mm(middleman_id: str, workload: int = 0, response: float = 5.0, rating: float = 4.5, available: bool = True):
    return MiddlemanCandidate(middleman_id, available, workload, response, rating)


class TestSelection:
    def test_lowest_workload_wins(self) -> None:
        chosen = select_middleman([mm("a", workload=2), mm("b", workload=1)])
        assert chosen.middleman_id == "b"

    def test_response_time_breaks_workload_tie(self) -> None:
        chosen = select_middleman([mm("a", response=6), mm("b", response=3)])
        assert chosen.middleman_id == "b"

    def test_rating_breaks_response_tie(self) -> None:
        chosen = select_middleman([mm("a", rating=4.0), mm("b", rating=4.9)])
        assert chosen.middleman_id == "b"

    def test_id_breaks_full_tie(self) -> None:
        chosen = select_middleman([mm("zed"), mm("amy")])
        assert chosen.middleman_id == "amy"

    def test_capacity_filter(self) -> None:
        assert select_middleman([mm("a", workload=3)]) is None
        policy = DispatchPolicy(max_concurrent_trades=4)
        assert select_middleman([mm("a", workload=3)], policy=policy).middleman_id == "a"

    def test_unavailable_and_excluded_are_skipped(self) -> None:
        pool = [mm("a", available=False), mm("b"), mm("c", workload=1)]
        assert select_middleman(pool, exclude={"b"}).middleman_id == "c"

    def test_empty_pool(self) -> None:
        assert select_middleman([]) is None

    def test_ranked_order(self) -> None:
        pool = [mm("a", workload=1), mm("b"), mm("c", response=1)]
        assert [c.middleman_id for c in eligible_candidates(pool)] == ["c", "b", "a"]


def test_estimate_response_minutes() -> None:
    assert estimate_response_minutes(0) == 5
    assert estimate_response_minutes(2) == 9


class TestAssignmentTimeout:
    def test_inside_window(self) -> None:
        check = check_assignment_timeout(T, T + timedelta(minutes=14))
        assert not check.is_timed_out
        assert check.time_remaining == timedelta(minutes=1)

    def test_at_fifteen_minutes(self) -> None:
        check = check_assignment_timeout(T, T + timedelta(minutes=15))
        assert check.is_timed_out
        assert check.should_reassign
        assert check.time_remaining == timedelta(0)


class TestSupervisionStatus:
    def test_active(self) -> None:
        report = supervision_status(T, T + timedelta(minutes=10))
        assert report.status == SupervisionStatus.ACTIVE
        assert report.time_remaining == timedelta(minutes=50)

    def test_completing_inside_warning_window(self) -> None:
        report = supervision_status(T, T + timedelta(minutes=55))
        assert report.status == SupervisionStatus.COMPLETING

    def test_timed_out_escalates(self) -> None:
        report = supervision_status(T, T + timedelta(minutes=60))
        assert report.status == SupervisionStatus.TIMED_OUT
        assert report.next_action == "Escalate to support"

    def test_completed_stays_completed(self) -> None:
        report = supervision_status(T, T + timedelta(minutes=90), SupervisionStatus.COMPLETED)
        assert report.status == SupervisionStatus.COMPLETED


def test_supervision_guidelines() -> None:
    assert supervision_guidelines() == {"initial_response": 15, "supervision": 60, "user_response": 10}
