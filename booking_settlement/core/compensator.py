"""
Compensator: refunds payments whose reservation found the event full.

One refund call per exhausted settlement attempt, keyed by an idempotency key
derived from the notification so that a redelivered notification cannot
refund twice. No retry loop; a failure is reported to the engine, which
logs and audits it for the reconciliation job.
"""
from dataclasses import dataclass
from typing import Optional

import structlog

from booking_settlement.core.exceptions import CompensationFailure
from booking_settlement.integrations.stripe_client import StripeClient, StripeError
from booking_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Refunded:
    refund_id: Optional[str]
    status: str


class Compensator:
    """Issues compensating refunds through Stripe."""

    REFUND_REASON = "requested_by_customer"

    def __init__(self, stripe_client: Optional[StripeClient] = None):
        self.stripe_client = stripe_client or StripeClient()

    async def refund(
        self, payment_reference: Optional[str], notification_id: str
    ) -> Refunded:
        """
        Refund the payment in full.

        Args:
            payment_reference: Stripe PaymentIntent id of the payment
            notification_id: Checkout session id, used for the idempotency key

        Returns:
            Refunded: The refund id and status

        Raises:
            CompensationFailure: If there is nothing to refund against or
                Stripe rejects the refund
        """
        if not payment_reference:
            metrics.record_compensation("failed")
            raise CompensationFailure(
                "Notification carries no payment reference to refund",
                payment_reference=payment_reference,
            )

        try:
            refund = await self.stripe_client.create_refund(
                payment_intent_id=payment_reference,
                reason=self.REFUND_REASON,
                idempotency_key=f"refund:{notification_id}",
                metadata={"stripe_session_id": notification_id, "cause": "capacity_exhausted"},
            )
        except StripeError as e:
            if e.already_refunded:
                # Redelivered after Stripe forgot the idempotency key.
                metrics.record_compensation("already_refunded")
                logger.info(
                    "compensation_already_refunded",
                    notification_id=notification_id,
                    payment_reference=payment_reference,
                )
                return Refunded(refund_id=None, status="already_refunded")
            metrics.record_compensation("failed")
            raise CompensationFailure(
                f"Refund failed: {e}",
                payment_reference=payment_reference,
                original_error=e,
            ) from e

        metrics.record_compensation("refunded")
        logger.info(
            "compensation_refund_issued",
            notification_id=notification_id,
            payment_reference=payment_reference,
            refund_id=refund.id,
        )
        return Refunded(refund_id=refund.id, status=refund.status)
