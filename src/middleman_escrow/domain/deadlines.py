"""Payment deadline tracker.

Pure, deterministic functions over a trade's payment deadline and the two
parties' paid/unpaid facts. Nothing here mutates state or reads the clock:
``now`` is always an argument, so the polling sweeper and on-demand status
reads get identical answers for identical inputs.

Timeline for a deadline D:

    now < D              window open, warnings at 15 and 5 minutes left
    D <= now < D + 5m    expired, grace period: a partial payment is refunded
    now >= D + 5m        expired past grace: refund a partial payment,
                         cancel when nobody paid
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from middleman_escrow.domain.enums import (
    EnforcementActionType,
    HoldRole,
    NotificationChannel,
    NotificationPriority,
    Urgency,
)
from middleman_escrow.domain.results import ErrorCode
from middleman_escrow.domain.timeutils import as_utc

if TYPE_CHECKING:
    from middleman_escrow.config import Settings

_ZERO = timedelta(0)


@dataclass(frozen=True)
class DeadlinePolicy:
    deadline_minutes: int = 30
    grace_minutes: int = 5
    high_urgency_minutes: int = 15
    critical_urgency_minutes: int = 5

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.deadline_minutes)

    @property
    def grace(self) -> timedelta:
        return timedelta(minutes=self.grace_minutes)

    @classmethod
    def from_settings(cls, settings: Settings) -> DeadlinePolicy:
        return cls(
            deadline_minutes=settings.payment_deadline_minutes,
            grace_minutes=settings.payment_grace_minutes,
            high_urgency_minutes=settings.deadline_warning_minutes,
            critical_urgency_minutes=settings.deadline_critical_minutes,
        )


DEFAULT_POLICY = DeadlinePolicy()


@dataclass(frozen=True)
class DeadlineContext:
    payment_deadline: datetime
    creator_paid: bool = False
    participant_paid: bool = False

    @property
    def both_paid(self) -> bool:
        return self.creator_paid and self.participant_paid

    @property
    def partially_paid(self) -> bool:
        """Exactly one party paid."""
        return self.creator_paid != self.participant_paid

    @property
    def nobody_paid(self) -> bool:
        return not (self.creator_paid or self.participant_paid)


@dataclass(frozen=True)
class DeadlineCheck:
    is_expired: bool
    time_remaining: timedelta
    should_refund: bool
    in_grace_period: bool = False
    reason: str = ""
    classification: ErrorCode | None = None


@dataclass(frozen=True)
class EnforcementDecision:
    action: EnforcementActionType
    urgency: Urgency
    message: str
    minutes_remaining: int = 0


@dataclass(frozen=True)
class NotificationStrategy:
    channels: tuple[NotificationChannel, ...]
    priority: NotificationPriority
    should_notify: bool = True


def create_deadline(agreement_time: datetime, policy: DeadlinePolicy = DEFAULT_POLICY) -> datetime:
    """Deadline stamped on a trade entering PAYMENT_PENDING."""
    return as_utc(agreement_time) + policy.window


def check_status(
    now: datetime,
    context: DeadlineContext,
    policy: DeadlinePolicy = DEFAULT_POLICY,
) -> DeadlineCheck:
    now = as_utc(now)
    deadline = as_utc(context.payment_deadline)
    remaining = deadline - now

    if context.both_paid:
        return DeadlineCheck(
            is_expired=False,
            time_remaining=max(remaining, _ZERO),
            should_refund=False,
            reason="Both payments received",
        )

    if now < deadline:
        return DeadlineCheck(
            is_expired=False,
            time_remaining=remaining,
            should_refund=False,
            reason="Payment window open",
        )

    if now < deadline + policy.grace:
        return DeadlineCheck(
            is_expired=True,
            time_remaining=_ZERO,
            should_refund=context.partially_paid,
            in_grace_period=True,
            reason=(
                "Grace period - preparing refund"
                if context.partially_paid
                else "Deadline expired - no payments"
            ),
            classification=ErrorCode.DEADLINE_EXPIRED,
        )

    return DeadlineCheck(
        is_expired=True,
        time_remaining=_ZERO,
        should_refund=context.partially_paid,
        reason="No payments received" if context.nobody_paid else "Partial payment - refunding",
        classification=ErrorCode.DEADLINE_EXPIRED,
    )


def _whole_minutes(delta: timedelta) -> int:
    return math.floor(delta.total_seconds() / 60)


def enforcement_action(
    now: datetime,
    context: DeadlineContext,
    policy: DeadlinePolicy = DEFAULT_POLICY,
) -> EnforcementDecision:
    """Decide what the scheduler should do with a PAYMENT_PENDING trade."""
    if context.both_paid:
        return EnforcementDecision(
            action=EnforcementActionType.NONE,
            urgency=Urgency.LOW,
            message="Payment completed successfully",
        )

    check = check_status(now, context, policy)
    minutes = _whole_minutes(check.time_remaining)

    if not check.is_expired:
        if minutes <= policy.critical_urgency_minutes:
            return EnforcementDecision(
                action=EnforcementActionType.WARNING,
                urgency=Urgency.CRITICAL,
                message=f"Payment deadline in {minutes} minutes",
                minutes_remaining=minutes,
            )
        if minutes <= policy.high_urgency_minutes:
            return EnforcementDecision(
                action=EnforcementActionType.WARNING,
                urgency=Urgency.HIGH,
                message=f"Payment deadline in {minutes} minutes",
                minutes_remaining=minutes,
            )
        return EnforcementDecision(
            action=EnforcementActionType.NONE,
            urgency=Urgency.MEDIUM,
            message=f"Payment deadline in {minutes} minutes",
            minutes_remaining=minutes,
        )

    if check.should_refund:
        return EnforcementDecision(
            action=EnforcementActionType.REFUND,
            urgency=Urgency.CRITICAL,
            message="Payment deadline expired. Processing refund...",
        )

    return EnforcementDecision(
        action=EnforcementActionType.CANCEL,
        urgency=Urgency.HIGH,
        message="Payment deadline expired. Trade cancelled.",
    )


def progress(
    now: datetime,
    context: DeadlineContext,
    policy: DeadlinePolicy = DEFAULT_POLICY,
) -> float:
    """Elapsed share of the payment window as a percentage in [0, 100]."""
    if context.both_paid:
        return 100.0
    check = check_status(now, context, policy)
    if check.time_remaining <= _ZERO:
        return 0.0
    total = policy.window
    elapsed = (total - check.time_remaining) / total * 100
    return min(100.0, max(0.0, elapsed))


def urgency_level(time_remaining: timedelta) -> Urgency:
    minutes = time_remaining.total_seconds() / 60
    if minutes <= 5:
        return Urgency.CRITICAL
    if minutes <= 15:
        return Urgency.HIGH
    if minutes <= 20:
        return Urgency.MEDIUM
    return Urgency.LOW


def notification_strategy(
    time_remaining: timedelta,
    policy: DeadlinePolicy = DEFAULT_POLICY,
) -> NotificationStrategy:
    """How loudly to deliver a deadline reminder.

    The critical band uses every channel at high priority. The warning band
    adds email to the websocket; anything earlier is websocket only.
    """
    minutes = time_remaining.total_seconds() / 60
    if minutes <= policy.critical_urgency_minutes:
        return NotificationStrategy(
            channels=(
                NotificationChannel.WEBSOCKET,
                NotificationChannel.EMAIL,
                NotificationChannel.PUSH,
            ),
            priority=NotificationPriority.HIGH,
        )
    if minutes <= policy.high_urgency_minutes:
        return NotificationStrategy(
            channels=(NotificationChannel.WEBSOCKET, NotificationChannel.EMAIL),
            priority=NotificationPriority.NORMAL,
        )
    return NotificationStrategy(
        channels=(NotificationChannel.WEBSOCKET,),
        priority=NotificationPriority.LOW,
    )


def format_time_remaining(time_remaining: timedelta) -> str:
    if time_remaining <= _ZERO:
        return "Expired"
    total_seconds = int(time_remaining.total_seconds())
    minutes, seconds = divmod(total_seconds, 60)
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def reminder_message(
    now: datetime,
    context: DeadlineContext,
    role: HoldRole,
    policy: DeadlinePolicy = DEFAULT_POLICY,
) -> str:
    """Per-party nudge shown next to the payment countdown."""
    remaining = format_time_remaining(check_status(now, context, policy).time_remaining)
    if role == HoldRole.CREATOR:
        own_paid, other_paid = context.creator_paid, context.participant_paid
    else:
        own_paid, other_paid = context.participant_paid, context.creator_paid

    if own_paid and not other_paid:
        return f"You've paid! Waiting for the other user. Time remaining: {remaining}"
    if not own_paid and other_paid:
        return f"The other user has paid. Complete your payment! Time remaining: {remaining}"
    if not own_paid and not other_paid:
        return f"Payment required from both users. Time remaining: {remaining}"
    return "Payment completed!"
