"""Tests for the role/action permission matrix (exhaustive)."""

from __future__ import annotations

import itertools

import pytest

from middleman_escrow.domain.enums import ActorRole, TradeAction, TradeStatus
from middleman_escrow.domain.permissions import (
    allowed_actions,
    can_perform,
    required_actions,
    resolve_role,
)

S, A, R = TradeStatus, TradeAction, ActorRole

GRANTED = {
    (S.ACTIVE, A.JOIN, R.VIEWER),
    (S.NEGOTIATING, A.JOIN, R.VIEWER),
    (S.NEGOTIATING, A.MESSAGE, R.CREATOR),
    (S.NEGOTIATING, A.MESSAGE, R.PARTICIPANT),
    (S.PAYMENT_PENDING, A.MESSAGE, R.CREATOR),
    (S.PAYMENT_PENDING, A.MESSAGE, R.PARTICIPANT),
    (S.PAYMENT_COMPLETE, A.MESSAGE, R.CREATOR),
    (S.PAYMENT_COMPLETE, A.MESSAGE, R.PARTICIPANT),
    (S.PAYMENT_COMPLETE, A.MESSAGE, R.MIDDLEMAN),
    (S.IN_PROGRESS, A.MESSAGE, R.CREATOR),
    (S.IN_PROGRESS, A.MESSAGE, R.PARTICIPANT),
    (S.IN_PROGRESS, A.MESSAGE, R.MIDDLEMAN),
    (S.PAYMENT_PENDING, A.PAY, R.CREATOR),
    (S.PAYMENT_PENDING, A.PAY, R.PARTICIPANT),
    (S.ACTIVE, A.CANCEL, R.CREATOR),
    (S.NEGOTIATING, A.CANCEL, R.CREATOR),
    (S.NEGOTIATING, A.CANCEL, R.PARTICIPANT),
}


@pytest.mark.parametrize(
    ("status", "action", "role"),
    list(itertools.product(TradeStatus, TradeAction, ActorRole)),
)
def test_matrix(status: S, action: A, role: R) -> None:
    assert can_perform(status, action, role) is ((status, action, role) in GRANTED)


class TestExplicitRefusals:
    def test_creator_cannot_message_before_anyone_joined(self) -> None:
        assert not can_perform(S.ACTIVE, A.MESSAGE, R.CREATOR)

    def test_nobody_cancels_once_payment_is_pending(self) -> None:
        assert not can_perform(S.PAYMENT_PENDING, A.CANCEL, R.CREATOR)
        assert not can_perform(S.PAYMENT_PENDING, A.CANCEL, R.PARTICIPANT)

    def test_middleman_never_pays(self) -> None:
        assert all(not can_perform(s, A.PAY, R.MIDDLEMAN) for s in TradeStatus)


class TestResolveRole:
    def test_roles(self) -> None:
        assert resolve_role("a", "a", "b", "m") == R.CREATOR
        assert resolve_role("b", "a", "b", "m") == R.PARTICIPANT
        assert resolve_role("m", "a", "b", "m") == R.MIDDLEMAN
        assert resolve_role("x", "a", "b", "m") == R.VIEWER

    def test_anonymous_is_viewer(self) -> None:
        assert resolve_role(None, "a", None) == R.VIEWER


def test_allowed_actions() -> None:
    assert allowed_actions(S.PAYMENT_PENDING, R.CREATOR) == [A.MESSAGE, A.PAY]
    assert allowed_actions(S.COMPLETED, R.CREATOR) == []


def test_required_actions() -> None:
    assert required_actions(S.IN_PROGRESS, R.MIDDLEMAN) == ["Verify exchange", "Approve completion"]
    assert required_actions(S.REFUNDED, R.VIEWER) == []
