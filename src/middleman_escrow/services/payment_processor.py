"""Payment processor collaborator.

The core never captures card payments itself. It talks to a processor
through the ``PaymentProcessor`` protocol: create a hold, ask for its status,
and move money (refund, cancel, transfer) with idempotency keys so that a
retried release or refund never moves money twice.

``SimulatedPaymentProcessor`` keeps everything in memory and generates fake
references, the same way the payment service ran in simulate mode. Tests and
``simulation.py`` flip hold outcomes with ``capture`` / ``fail``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from middleman_escrow.domain.enums import ProcessorOutcome
from middleman_escrow.domain.exceptions import PaymentProcessorError
from middleman_escrow.logging_config import get_logger

logger = get_logger(__name__)


@runtime_checkable
class PaymentProcessor(Protocol):
    """Capability the EscrowLedger needs from a payment processor."""

    async def create_hold(self, *, payer_id: str, amount: int, idempotency_key: str) -> str:
        """Open a hold for ``amount`` minor units and return its external reference."""
        ...

    async def query_hold_status(self, external_ref: str) -> ProcessorOutcome:
        ...

    async def refund(self, external_ref: str, *, idempotency_key: str) -> None:
        ...

    async def cancel_hold(self, external_ref: str) -> None:
        """Abandon a hold that was never captured."""
        ...

    async def transfer(
        self,
        external_ref: str,
        *,
        recipient_id: str,
        amount: int,
        idempotency_key: str,
    ) -> None:
        """Pay ``amount`` out of a captured hold to ``recipient_id``."""
        ...


@dataclass
class SimulatedHold:
    external_ref: str
    payer_id: str
    amount: int
    outcome: ProcessorOutcome = ProcessorOutcome.PENDING
    refunded: bool = False
    cancelled: bool = False
    transfers: list[tuple[str, int]] = field(default_factory=list)


class SimulatedPaymentProcessor:
    """In-memory processor for development, tests, and the simulation script."""

    def __init__(self, *, auto_capture: bool = False) -> None:
        """
        Args:
            auto_capture: If True, new holds report ``succeeded`` immediately.
        """
        self._auto_capture = auto_capture
        self._holds: dict[str, SimulatedHold] = {}
        self._keys: dict[str, str] = {}
        self.available = True
        self.refund_count = 0
        self.transfer_count = 0

    def _check_available(self) -> None:
        if not self.available:
            raise PaymentProcessorError("Simulated processor is unavailable")

    def _get(self, external_ref: str) -> SimulatedHold:
        try:
            return self._holds[external_ref]
        except KeyError:
            raise PaymentProcessorError(
                f"Unknown hold reference: {external_ref}", external_ref=external_ref
            ) from None

    # ------------------------------------------------------------------
    # PaymentProcessor protocol
    # ------------------------------------------------------------------

    async def create_hold(self, *, payer_id: str, amount: int, idempotency_key: str) -> str:
        self._check_available()
        if idempotency_key in self._keys:
            return self._keys[idempotency_key]

        external_ref = f"sim_hold_{uuid.uuid4().hex[:24]}"
        outcome = ProcessorOutcome.SUCCEEDED if self._auto_capture else ProcessorOutcome.PENDING
        self._holds[external_ref] = SimulatedHold(
            external_ref=external_ref,
            payer_id=payer_id,
            amount=amount,
            outcome=outcome,
        )
        self._keys[idempotency_key] = external_ref
        logger.info(
            "payment.hold_simulated",
            external_ref=external_ref,
            payer_id=payer_id,
            amount=amount,
        )
        return external_ref

    async def query_hold_status(self, external_ref: str) -> ProcessorOutcome:
        self._check_available()
        return self._get(external_ref).outcome

    async def refund(self, external_ref: str, *, idempotency_key: str) -> None:
        self._check_available()
        hold = self._get(external_ref)
        if idempotency_key in self._keys or hold.refunded:
            logger.debug("payment.refund_replayed", external_ref=external_ref)
            return
        if hold.outcome != ProcessorOutcome.SUCCEEDED:
            raise PaymentProcessorError(
                f"Cannot refund uncaptured hold {external_ref}", external_ref=external_ref
            )
        hold.refunded = True
        self._keys[idempotency_key] = external_ref
        self.refund_count += 1
        logger.info("payment.refund_simulated", external_ref=external_ref, amount=hold.amount)

    async def cancel_hold(self, external_ref: str) -> None:
        self._check_available()
        hold = self._get(external_ref)
        hold.cancelled = True
        logger.info("payment.hold_cancelled", external_ref=external_ref)

    async def transfer(
        self,
        external_ref: str,
        *,
        recipient_id: str,
        amount: int,
        idempotency_key: str,
    ) -> None:
        self._check_available()
        hold = self._get(external_ref)
        if idempotency_key in self._keys:
            return
        if amount > hold.amount:
            raise PaymentProcessorError(
                f"Transfer of {amount} exceeds hold amount {hold.amount}",
                external_ref=external_ref,
            )
        hold.transfers.append((recipient_id, amount))
        self._keys[idempotency_key] = external_ref
        self.transfer_count += 1
        logger.info(
            "payment.transfer_simulated",
            external_ref=external_ref,
            recipient_id=recipient_id,
            amount=amount,
        )

    # ------------------------------------------------------------------
    # Simulation controls
    # ------------------------------------------------------------------

    def capture(self, external_ref: str) -> None:
        """Mark a hold as captured, as a card network would."""
        self._get(external_ref).outcome = ProcessorOutcome.SUCCEEDED

    def fail(self, external_ref: str) -> None:
        self._get(external_ref).outcome = ProcessorOutcome.FAILED

    def hold(self, external_ref: str) -> SimulatedHold:
        return self._get(external_ref)
