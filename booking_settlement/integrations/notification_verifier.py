"""
Stripe notification verification and decoding.

The signature is checked against the exact bytes Stripe sent, before any JSON
parsing, and only then is the body decoded into typed models. Verification is
pure: no I/O, no store access.
"""
from typing import Any, Dict, Optional

import stripe
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from booking_settlement.config import get_settings
from booking_settlement.core.exceptions import AuthenticationError, MalformedMetadataError

logger = structlog.get_logger(__name__)

CHECKOUT_SESSION_EVENTS = frozenset(
    {
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
    }
)


class CustomerDetails(BaseModel):
    """Customer details as collected by the Stripe checkout page."""

    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class CheckoutSession(BaseModel):
    """The subset of a Stripe checkout session the settlement core reads."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    payment_intent: Optional[str] = None
    payment_status: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    customer_details: Optional[CustomerDetails] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("payment_intent", mode="before")
    @classmethod
    def unwrap_expanded_intent(cls, v: Any) -> Any:
        """Accept an expanded PaymentIntent object as well as its id."""
        if isinstance(v, dict):
            return v.get("id")
        return v

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, v: Any) -> Any:
        return v or {}


class NotificationData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: Dict[str, Any]


class StripeNotification(BaseModel):
    """A verified Stripe event."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    data: NotificationData

    @property
    def is_checkout_settlement(self) -> bool:
        return self.type in CHECKOUT_SESSION_EVENTS

    def checkout_session(self) -> CheckoutSession:
        """
        Decode ``data.object`` as a checkout session.

        Raises:
            MalformedMetadataError: If the object is not a usable checkout session
        """
        try:
            return CheckoutSession.model_validate(self.data.object)
        except ValidationError as e:
            first = e.errors()[0]
            raise MalformedMetadataError(
                f"Invalid checkout session: {first['msg']}",
                field=".".join(str(part) for part in first["loc"]),
                event_id=self.id,
            ) from None


class NotificationVerifier:
    """Authenticates Stripe webhook deliveries."""

    def __init__(
        self,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
    ):
        settings = get_settings()
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.tolerance_seconds = (
            tolerance_seconds
            if tolerance_seconds is not None
            else settings.stripe_signature_tolerance
        )

    def verify(self, payload: bytes, signature: Optional[str]) -> StripeNotification:
        """
        Verify the signature over the raw body and decode the event.

        Args:
            payload: Raw request body, exactly as received
            signature: ``Stripe-Signature`` header value

        Returns:
            StripeNotification: The verified, decoded event

        Raises:
            AuthenticationError: If the header is missing, the signature does
                not match, or the verified body is not a Stripe event
        """
        if not signature:
            logger.warning("webhook_signature_missing")
            raise AuthenticationError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("webhook_payload_not_utf8")
            raise AuthenticationError("Notification body is not valid UTF-8") from None

        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_verification_failed", error=str(e))
            raise AuthenticationError(f"Invalid webhook signature: {e}") from None

        try:
            notification = StripeNotification.model_validate_json(payload)
        except ValidationError as e:
            logger.warning("webhook_payload_undecodable", error=str(e))
            raise AuthenticationError("Verified body is not a Stripe event") from None

        logger.info(
            "webhook_signature_verified",
            event_id=notification.id,
            event_type=notification.type,
        )
        return notification
