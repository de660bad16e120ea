"""
Exception classes for the settlement core.

Only faults are exceptions. Capacity exhaustion and duplicate deliveries are
ordinary outcomes and are reported through ``SettlementOutcome`` instead.

Mapping to the webhook response:
- AuthenticationError      -> 400, Stripe should not blindly redeliver
- MalformedMetadataError   -> absorbed by the engine, 200
- StoreUnavailableError    -> 503, Stripe redelivers
- CompensationFailure      -> logged and audited, never surfaced (200)
"""

from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base exception for settlement errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context


class AuthenticationError(SettlementError):
    """The notification could not be proven to come from Stripe."""

    pass


class MalformedMetadataError(SettlementError):
    """Booking metadata is missing or invalid (kind, event id, places, email)."""

    def __init__(self, message: str, field: Optional[str] = None, **context: Any):
        super().__init__(message, field=field, **context)
        self.field = field


class StoreUnavailableError(SettlementError):
    """The capacity store or order ledger could not determine or record an outcome."""

    pass


class OrderNumberConflictError(StoreUnavailableError):
    """Every attempt at drawing a free order number collided with a concurrent settlement."""

    def __init__(self, notification_id: str, attempts: int):
        super().__init__(
            f"Could not assign an order number after {attempts} attempts",
            notification_id=notification_id,
            attempts=attempts,
        )
        self.attempts = attempts


class CompensationFailure(SettlementError):
    """The refund for an exhausted reservation could not be issued."""

    def __init__(
        self,
        message: str,
        payment_reference: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, payment_reference=payment_reference)
        self.payment_reference = payment_reference
        self.original_error = original_error
