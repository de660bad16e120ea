"""Integrations with Stripe."""
from .notification_verifier import (
    CheckoutSession,
    CustomerDetails,
    NotificationVerifier,
    StripeNotification,
)
from .stripe_client import (
    CircuitBreaker,
    CircuitState,
    StripeClient,
    StripeError,
    StripeErrorType,
)

__all__ = [
    "CheckoutSession",
    "CircuitBreaker",
    "CircuitState",
    "CustomerDetails",
    "NotificationVerifier",
    "StripeClient",
    "StripeError",
    "StripeErrorType",
    "StripeNotification",
]
