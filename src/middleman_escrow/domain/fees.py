"""Escrow fee arithmetic.

All amounts are integers in minor currency units (cents). Rates are Decimal
so the calculation never touches binary floating point. Each fee is rounded
to the nearest minor unit on its own (half-up), so every line of the
breakdown can be audited independently.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from middleman_escrow.domain.results import ErrorCode, Result

if TYPE_CHECKING:
    from middleman_escrow.config import Settings

PLATFORM_FEE_RATE = Decimal("0.03")
PROCESSOR_FEE_RATE = Decimal("0.029")
PROCESSOR_FIXED_FEE = 30
PAYMENT_TOLERANCE = 1


@dataclass(frozen=True)
class FeeSchedule:
    platform_fee_rate: Decimal = PLATFORM_FEE_RATE
    processor_fee_rate: Decimal = PROCESSOR_FEE_RATE
    processor_fixed_fee: int = PROCESSOR_FIXED_FEE
    payment_tolerance: int = PAYMENT_TOLERANCE

    @classmethod
    def from_settings(cls, settings: Settings) -> FeeSchedule:
        return cls(
            platform_fee_rate=settings.platform_fee_rate,
            processor_fee_rate=settings.processor_fee_rate,
            processor_fixed_fee=settings.processor_fixed_fee,
            payment_tolerance=settings.payment_tolerance_minor,
        )


@dataclass(frozen=True)
class FeeBreakdown:
    subtotal: int
    platform_fee: int
    processor_fee: int
    total: int

    @property
    def net_to_seller(self) -> int:
        """What the creator receives from the participant's hold on release."""
        return self.subtotal - self.platform_fee

    def to_dict(self) -> dict[str, int]:
        return {
            "subtotal": self.subtotal,
            "platform_fee": self.platform_fee,
            "processor_fee": self.processor_fee,
            "total": self.total,
        }


def _round_minor(amount: Decimal) -> int:
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_fees(subtotal: int, schedule: FeeSchedule | None = None) -> FeeBreakdown:
    """Compute the amount one party must hold for a trade priced ``subtotal``.

    Raises:
        ValueError: If ``subtotal`` is not a positive integer amount.
    """
    if isinstance(subtotal, bool) or not isinstance(subtotal, int) or subtotal <= 0:
        raise ValueError(f"subtotal must be a positive integer of minor units, got {subtotal!r}")
    schedule = schedule or FeeSchedule()

    base = Decimal(subtotal)
    platform_fee = _round_minor(base * schedule.platform_fee_rate)
    processor_fee = _round_minor(base * schedule.processor_fee_rate) + schedule.processor_fixed_fee
    return FeeBreakdown(
        subtotal=subtotal,
        platform_fee=platform_fee,
        processor_fee=processor_fee,
        total=subtotal + platform_fee + processor_fee,
    )


def validate_payment_amount(
    captured: int,
    expected: int,
    tolerance: int = PAYMENT_TOLERANCE,
) -> Result[int]:
    """Compare a captured amount against what the hold asked for."""
    difference = abs(captured - expected)
    if difference > tolerance:
        return Result.failure(
            ErrorCode.PAYMENT_MISMATCH,
            f"Captured amount {captured} does not match expected {expected} "
            f"(tolerance {tolerance})",
        )
    return Result.success(captured)
