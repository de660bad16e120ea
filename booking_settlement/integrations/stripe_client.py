"""
Stripe client for the calls the settlement core makes: refunds.

- Errors are classified (transient / permanent / rate limit) and keep
  Stripe's error code, so callers can tell "already refunded" apart from
  a real failure.
- A circuit breaker stops hammering Stripe while it is failing; an open
  circuit fails fast with a transient error.

Refunds are not retried here. The settlement core issues at most one per
exhausted reservation; failed refunds are left to the reconciliation job.
"""
import asyncio
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import stripe
import structlog

from booking_settlement.config import get_settings
from booking_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Stripe error code for a refund against a charge that is already fully refunded.
CHARGE_ALREADY_REFUNDED = "charge_already_refunded"


class StripeErrorType(Enum):
    """Classification of Stripe errors."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMIT = "rate_limit"


class StripeError(Exception):
    """A failed Stripe call, classified."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error
        self.code = code

    @property
    def already_refunded(self) -> bool:
        return self.code == CHARGE_ALREADY_REFUNDED


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker in front of the Stripe API.

    Opens after ``failure_threshold`` consecutive failures and rejects calls
    for ``timeout`` seconds. The first call after that probes Stripe
    (half-open); ``success_threshold`` successes close the circuit again,
    any failure reopens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None
        self.state = CircuitState.CLOSED

    def _transition(self, state: CircuitState) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state.value)
        logger.info("circuit_breaker_transition", state=state.value)

    def guard(self) -> None:
        """
        Let a call through or fail fast.

        Raises:
            StripeError: If the circuit is open
        """
        if self.state is not CircuitState.OPEN:
            return
        if self.opened_at is not None and time.monotonic() - self.opened_at >= self.timeout:
            self.success_count = 0
            self._transition(CircuitState.HALF_OPEN)
            return
        raise StripeError("Circuit breaker is open", StripeErrorType.TRANSIENT)

    def record_success(self) -> None:
        self.failure_count = 0
        if self.state is CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.opened_at = None
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state is CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.opened_at = time.monotonic()
            if self.state is not CircuitState.OPEN:
                logger.warning("circuit_breaker_opened", failure_count=self.failure_count)
                self._transition(CircuitState.OPEN)


def classify_error(error: stripe.StripeError) -> StripeErrorType:
    """Classify a Stripe library error. Unknown errors count as transient."""
    if isinstance(error, stripe.RateLimitError):
        return StripeErrorType.RATE_LIMIT
    if isinstance(error, (stripe.CardError, stripe.InvalidRequestError)):
        return StripeErrorType.PERMANENT
    return StripeErrorType.TRANSIENT


class StripeClient:
    """
    Async wrapper around the synchronous stripe library.

    Calls run in a worker thread so the event loop keeps settling other
    notifications meanwhile.
    """

    def __init__(self, circuit_breaker: Optional[CircuitBreaker] = None) -> None:
        settings = get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
        )

    async def _call(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        self.circuit_breaker.guard()
        start_time = time.time()
        try:
            result = await asyncio.to_thread(func, **kwargs)
        except stripe.StripeError as e:
            duration = time.time() - start_time
            error_type = classify_error(e)
            code = getattr(e, "code", None)
            # Only availability failures count toward opening the circuit.
            if error_type is not StripeErrorType.PERMANENT:
                self.circuit_breaker.record_failure()
            metrics.record_stripe_api_call(operation, "error", duration)
            metrics.record_stripe_api_error(error_type.value)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=code,
                error_message=str(e),
            )
            raise StripeError(str(e), error_type, original_error=e, code=code) from e

        self.circuit_breaker.record_success()
        metrics.record_stripe_api_call(operation, "success", time.time() - start_time)
        return result

    async def create_refund(
        self,
        payment_intent_id: str,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> stripe.Refund:
        """
        Refund a payment in full.

        Args:
            payment_intent_id: Stripe PaymentIntent ID
            reason: Stripe refund reason
            idempotency_key: Stripe idempotency key
            metadata: Metadata attached to the refund

        Returns:
            stripe.Refund: Created refund

        Raises:
            StripeError: If the refund could not be created
        """
        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if reason:
            params["reason"] = reason
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        if metadata:
            params["metadata"] = metadata

        refund = await self._call("create_refund", stripe.Refund.create, **params)
        logger.info(
            "refund_created",
            payment_intent_id=payment_intent_id,
            refund_id=refund.id,
            status=refund.status,
        )
        return refund
