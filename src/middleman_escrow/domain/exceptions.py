"""Domain exceptions for the middleman escrow core.

Business-rule failures are NOT exceptions here (see domain/results.py).
These classes cover missing records and collaborator faults, which the
caller must retry or surface. They are translated to HTTP responses by the
API layer's middleware.
"""


class EscrowCoreError(Exception):
    """Base exception for all core errors."""

    def __init__(self, message: str, code: str = "ESCROW_CORE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Lookup Errors ---


class TradeNotFoundError(EscrowCoreError):
    """Raised when a trade ID does not exist."""

    def __init__(self, trade_id: str) -> None:
        super().__init__(
            message=f"Trade not found: {trade_id}",
            code="TRADE_NOT_FOUND",
        )
        self.trade_id = trade_id


class HoldNotFoundError(EscrowCoreError):
    """Raised when a processor callback references an unknown hold."""

    def __init__(self, external_ref: str) -> None:
        super().__init__(
            message=f"No escrow hold for processor reference: {external_ref}",
            code="HOLD_NOT_FOUND",
        )
        self.external_ref = external_ref


# --- Collaborator Errors ---


class PaymentProcessorError(EscrowCoreError):
    """Raised when the payment processor is unreachable or rejects a call."""

    def __init__(self, message: str, external_ref: str | None = None) -> None:
        super().__init__(message=message, code="PAYMENT_PROCESSOR_ERROR")
        self.external_ref = external_ref


class EventDeliveryError(EscrowCoreError):
    """Raised by an event sink that could not deliver. Never reaches callers."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="EVENT_DELIVERY_ERROR")


# --- Invariant Errors ---


class EscrowInvariantError(EscrowCoreError):
    """Raised when an internal invariant breaks in the middle of a unit of work.

    Example: the trade was claimed as COMPLETED but the ledger refused the
    release. The unit of work is rolled back so no half-state is committed.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="ESCROW_INVARIANT_VIOLATED")
