"""
Core settlement logic.

``SettlementEngine`` and ``Compensator`` depend on the Stripe integration and
are imported from their modules directly.
"""
from .booking_metadata import BookingKind, BookingRequest, parse_booking_request
from .capacity_store import CapacityStore, Exhausted, Reserved
from .exceptions import (
    AuthenticationError,
    CompensationFailure,
    MalformedMetadataError,
    OrderNumberConflictError,
    SettlementError,
    StoreUnavailableError,
)
from .idempotency import SettledNotificationCache
from .order_ledger import AlreadyExists, Inserted, OrderLedger, SettlementRecord
from .outbox import OutboxPublisher

__all__ = [
    "AlreadyExists",
    "AuthenticationError",
    "BookingKind",
    "BookingRequest",
    "CapacityStore",
    "CompensationFailure",
    "Exhausted",
    "Inserted",
    "MalformedMetadataError",
    "OrderLedger",
    "OrderNumberConflictError",
    "OutboxPublisher",
    "Reserved",
    "SettledNotificationCache",
    "SettlementError",
    "SettlementRecord",
    "StoreUnavailableError",
    "parse_booking_request",
]
