"""Middleman selection and timeout arithmetic.

Pure functions used by the MiddlemanDispatcher service. Selection is fully
deterministic: after the capacity filter the pool is ordered by
(workload asc, response time asc, rating desc, middleman_id asc), so two
candidates that tie on every metric are still chosen reproducibly.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from middleman_escrow.domain.enums import SupervisionStatus
from middleman_escrow.domain.timeutils import as_utc

if TYPE_CHECKING:
    from middleman_escrow.config import Settings

_ZERO = timedelta(0)


@dataclass(frozen=True)
class DispatchPolicy:
    max_concurrent_trades: int = 3
    assignment_timeout_minutes: int = 15
    supervision_timeout_minutes: int = 60
    supervision_warning_minutes: int = 10

    @property
    def assignment_timeout(self) -> timedelta:
        return timedelta(minutes=self.assignment_timeout_minutes)

    @property
    def supervision_timeout(self) -> timedelta:
        return timedelta(minutes=self.supervision_timeout_minutes)

    @property
    def supervision_warning(self) -> timedelta:
        return timedelta(minutes=self.supervision_warning_minutes)

    @classmethod
    def from_settings(cls, settings: Settings) -> DispatchPolicy:
        return cls(
            max_concurrent_trades=settings.middleman_max_concurrent_trades,
            assignment_timeout_minutes=settings.assignment_timeout_minutes,
            supervision_timeout_minutes=settings.supervision_timeout_minutes,
            supervision_warning_minutes=settings.supervision_warning_minutes,
        )


DEFAULT_POLICY = DispatchPolicy()


@dataclass(frozen=True)
class MiddlemanCandidate:
    """One roster entry as reported by the directory collaborator."""

    middleman_id: str
    available: bool
    current_workload: int
    average_response_time_minutes: float
    rating: float


@dataclass(frozen=True)
class AssignmentTimeoutCheck:
    is_timed_out: bool
    time_remaining: timedelta
    should_reassign: bool


@dataclass(frozen=True)
class SupervisionReport:
    status: SupervisionStatus
    time_elapsed: timedelta
    time_remaining: timedelta
    next_action: str


def eligible_candidates(
    candidates: Iterable[MiddlemanCandidate],
    exclude: Iterable[str] = (),
    policy: DispatchPolicy = DEFAULT_POLICY,
) -> list[MiddlemanCandidate]:
    excluded = set(exclude)
    pool = [
        c
        for c in candidates
        if c.available
        and c.current_workload < policy.max_concurrent_trades
        and c.middleman_id not in excluded
    ]
    return sorted(
        pool,
        key=lambda c: (
            c.current_workload,
            c.average_response_time_minutes,
            -c.rating,
            c.middleman_id,
        ),
    )


def select_middleman(
    candidates: Iterable[MiddlemanCandidate],
    exclude: Iterable[str] = (),
    policy: DispatchPolicy = DEFAULT_POLICY,
) -> MiddlemanCandidate | None:
    """Pick the best available middleman, or None if the pool is empty."""
    ranked = eligible_candidates(candidates, exclude, policy)
    return ranked[0] if ranked else None


def estimate_response_minutes(workload: int) -> int:
    """5 minutes base plus 2 minutes per trade already on the middleman's desk."""
    return 5 + workload * 2


def check_assignment_timeout(
    assigned_at: datetime,
    now: datetime,
    policy: DispatchPolicy = DEFAULT_POLICY,
) -> AssignmentTimeoutCheck:
    deadline = as_utc(assigned_at) + policy.assignment_timeout
    remaining = deadline - as_utc(now)
    timed_out = remaining <= _ZERO
    return AssignmentTimeoutCheck(
        is_timed_out=timed_out,
        time_remaining=max(remaining, _ZERO),
        should_reassign=timed_out,
    )


def supervision_status(
    started_at: datetime,
    now: datetime,
    current: SupervisionStatus = SupervisionStatus.ACTIVE,
    policy: DispatchPolicy = DEFAULT_POLICY,
) -> SupervisionReport:
    """Classify a supervision window.

    A timed-out window asks for escalation to a human; the dispatcher has no
    authority to move money on its own.
    """
    elapsed = as_utc(now) - as_utc(started_at)
    remaining = max(policy.supervision_timeout - elapsed, _ZERO)

    if current == SupervisionStatus.COMPLETED:
        return SupervisionReport(
            status=SupervisionStatus.COMPLETED,
            time_elapsed=elapsed,
            time_remaining=remaining,
            next_action="None - supervision finished",
        )
    if current == SupervisionStatus.TIMED_OUT or remaining <= _ZERO:
        return SupervisionReport(
            status=SupervisionStatus.TIMED_OUT,
            time_elapsed=elapsed,
            time_remaining=_ZERO,
            next_action="Escalate to support",
        )
    if remaining < policy.supervision_warning:
        return SupervisionReport(
            status=SupervisionStatus.COMPLETING,
            time_elapsed=elapsed,
            time_remaining=remaining,
            next_action="Prepare to approve or escalate",
        )
    return SupervisionReport(
        status=SupervisionStatus.ACTIVE,
        time_elapsed=elapsed,
        time_remaining=remaining,
        next_action="Monitor in-game exchange",
    )


def supervision_guidelines(policy: DispatchPolicy = DEFAULT_POLICY) -> dict[str, int]:
    """Timeouts (minutes) a middleman works against."""
    return {
        "initial_response": policy.assignment_timeout_minutes,
        "supervision": policy.supervision_timeout_minutes,
        "user_response": 10,
    }
