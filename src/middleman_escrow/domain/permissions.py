"""Role/action permission matrix.

The matrix is data, not logic: a lookup keyed by (status, action, role).
Combinations that are not listed are denied. A few combinations are listed
explicitly as False so the refusal is visible when reading the table.
"""

from __future__ import annotations

from middleman_escrow.domain.enums import ActorRole, TradeAction, TradeStatus

_S = TradeStatus
_A = TradeAction
_R = ActorRole

ACTION_PERMISSIONS: dict[tuple[TradeStatus, TradeAction, ActorRole], bool] = {
    # Join trade
    (_S.ACTIVE, _A.JOIN, _R.VIEWER): True,
    (_S.NEGOTIATING, _A.JOIN, _R.VIEWER): True,
    # Send messages
    (_S.ACTIVE, _A.MESSAGE, _R.CREATOR): False,
    (_S.NEGOTIATING, _A.MESSAGE, _R.CREATOR): True,
    (_S.NEGOTIATING, _A.MESSAGE, _R.PARTICIPANT): True,
    (_S.PAYMENT_PENDING, _A.MESSAGE, _R.CREATOR): True,
    (_S.PAYMENT_PENDING, _A.MESSAGE, _R.PARTICIPANT): True,
    (_S.PAYMENT_COMPLETE, _A.MESSAGE, _R.CREATOR): True,
    (_S.PAYMENT_COMPLETE, _A.MESSAGE, _R.PARTICIPANT): True,
    (_S.PAYMENT_COMPLETE, _A.MESSAGE, _R.MIDDLEMAN): True,
    (_S.IN_PROGRESS, _A.MESSAGE, _R.CREATOR): True,
    (_S.IN_PROGRESS, _A.MESSAGE, _R.PARTICIPANT): True,
    (_S.IN_PROGRESS, _A.MESSAGE, _R.MIDDLEMAN): True,
    # Make payments
    (_S.PAYMENT_PENDING, _A.PAY, _R.CREATOR): True,
    (_S.PAYMENT_PENDING, _A.PAY, _R.PARTICIPANT): True,
    # Cancel trade
    (_S.ACTIVE, _A.CANCEL, _R.CREATOR): True,
    (_S.NEGOTIATING, _A.CANCEL, _R.CREATOR): True,
    (_S.NEGOTIATING, _A.CANCEL, _R.PARTICIPANT): True,
    (_S.PAYMENT_PENDING, _A.CANCEL, _R.CREATOR): False,
    (_S.PAYMENT_PENDING, _A.CANCEL, _R.PARTICIPANT): False,
}


def can_perform(status: TradeStatus, action: TradeAction, role: ActorRole) -> bool:
    """Look up the matrix; unlisted combinations are denied."""
    return ACTION_PERMISSIONS.get((TradeStatus(status), TradeAction(action), ActorRole(role)), False)


def allowed_actions(status: TradeStatus, role: ActorRole) -> list[TradeAction]:
    return [action for action in TradeAction if can_perform(status, action, role)]


def resolve_role(
    actor_id: str | None,
    creator_id: str,
    participant_id: str | None,
    middleman_id: str | None = None,
) -> ActorRole:
    """Role of an authenticated actor relative to one trade."""
    if actor_id is None:
        return ActorRole.VIEWER
    if actor_id == creator_id:
        return ActorRole.CREATOR
    if participant_id is not None and actor_id == participant_id:
        return ActorRole.PARTICIPANT
    if middleman_id is not None and actor_id == middleman_id:
        return ActorRole.MIDDLEMAN
    return ActorRole.VIEWER


_REQUIRED_ACTIONS: dict[tuple[TradeStatus, ActorRole], tuple[str, ...]] = {
    (_S.ACTIVE, _R.CREATOR): ("Wait for participants",),
    (_S.NEGOTIATING, _R.CREATOR): ("Discuss terms", "Agree on price"),
    (_S.NEGOTIATING, _R.PARTICIPANT): ("Discuss terms", "Agree on price"),
    (_S.PAYMENT_PENDING, _R.CREATOR): ("Complete payment within 30 minutes",),
    (_S.PAYMENT_PENDING, _R.PARTICIPANT): ("Complete payment within 30 minutes",),
    (_S.PAYMENT_COMPLETE, _R.MIDDLEMAN): ("Accept supervision", "Join trade room"),
    (_S.IN_PROGRESS, _R.CREATOR): ("Complete in-game exchange",),
    (_S.IN_PROGRESS, _R.PARTICIPANT): ("Complete in-game exchange",),
    (_S.IN_PROGRESS, _R.MIDDLEMAN): ("Verify exchange", "Approve completion"),
    (_S.COMPLETED, _R.CREATOR): ("Trade completed",),
    (_S.COMPLETED, _R.PARTICIPANT): ("Trade completed",),
    (_S.COMPLETED, _R.MIDDLEMAN): ("Trade completed",),
}


def required_actions(status: TradeStatus, role: ActorRole) -> list[str]:
    """To-do list shown to a role while the trade sits in ``status``."""
    return list(_REQUIRED_ACTIONS.get((TradeStatus(status), ActorRole(role)), ()))
