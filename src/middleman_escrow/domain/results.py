"""Typed outcomes for business-rule checks.

Validation and business-rule failures are returned to the caller as values,
never raised. Only collaborator faults (processor unreachable, storage down)
travel as exceptions; see domain/exceptions.py.

Usage:
    result = lifecycle.validate(trade, TradeStatus.PAYMENT_PENDING, ctx)
    if not result.ok:
        logger.info("trade.rejected", error=result.error, reason=result.reason)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorCode(enum.StrEnum):
    """Closed taxonomy of business outcomes."""

    INVALID_TRANSITION = "INVALID_TRANSITION"
    REQUIREMENT_NOT_MET = "REQUIREMENT_NOT_MET"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    PAYMENT_MISMATCH = "PAYMENT_MISMATCH"
    NO_AVAILABLE_MIDDLEMAN = "NO_AVAILABLE_MIDDLEMAN"
    ASSIGNMENT_TIMEOUT = "ASSIGNMENT_TIMEOUT"
    SUPERVISION_TIMEOUT = "SUPERVISION_TIMEOUT"
    DEADLINE_EXPIRED = "DEADLINE_EXPIRED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    STATE_CONFLICT = "STATE_CONFLICT"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or an ErrorCode with a human-readable reason."""

    value: T | None = None
    error: ErrorCode | None = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: ErrorCode, reason: str) -> Result[T]:
        return cls(error=error, reason=reason)

    def unwrap(self) -> T:
        """Return the value, or raise ValueError if this is a failure.

        Meant for tests and call sites that already checked ``ok``.
        """
        if self.error is not None:
            raise ValueError(f"{self.error}: {self.reason}")
        return self.value  # type: ignore[return-value]
