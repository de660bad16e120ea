"""
API routes: the Stripe webhook, the order lookup and monitoring.
"""
from functools import lru_cache
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_settlement.core.exceptions import AuthenticationError, StoreUnavailableError
from booking_settlement.core.order_ledger import OrderLedger
from booking_settlement.core.settlement_engine import SettlementEngine
from booking_settlement.database.connection import get_db, get_session_factory
from booking_settlement.monitoring.health import HealthCheck
from booking_settlement.monitoring.metrics import metrics

from .schemas import HealthCheckResponse, OrderResponse, WebhookResponse

logger = structlog.get_logger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
orders_router = APIRouter(prefix="/orders", tags=["orders"])
monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()


@lru_cache()
def get_settlement_engine() -> SettlementEngine:
    """Process-wide settlement engine (stateless, safe to share)."""
    return SettlementEngine(session_factory=get_session_factory())


def get_order_ledger() -> OrderLedger:
    return OrderLedger()


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Settle checkout-session notifications into bookings",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    engine: SettlementEngine = Depends(get_settlement_engine),
) -> Dict[str, Any]:
    """
    Handle a Stripe webhook delivery.

    The body is read as raw bytes: the signature covers the exact payload.
    Every application outcome is acknowledged with 200; only an
    unauthenticated delivery (400) or a store fault (503) is not.
    """
    body = await request.body()

    try:
        result = await engine.process(body, stripe_signature)
    except AuthenticationError as e:
        metrics.record_webhook_rejection("authentication")
        logger.warning("api_webhook_rejected", error=e.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except StoreUnavailableError:
        metrics.record_webhook_rejection("store_unavailable")
        raise

    logger.info(
        "api_webhook_acknowledged",
        outcome=result.outcome.value,
        notification_id=result.notification_id,
    )
    return {
        "status": result.outcome.value,
        "notification_id": result.notification_id,
        "order_number": result.order_number,
        "refund_id": result.refund_id,
        "compensation_failed": result.compensation_failed,
        "message": result.reason,
    }


@orders_router.get(
    "/{session_id}",
    response_model=OrderResponse,
    summary="Get a settled order",
    description="Look up the order settled for a Stripe checkout session",
)
async def get_order(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    ledger: OrderLedger = Depends(get_order_ledger),
) -> OrderResponse:
    """Get the order for a checkout session."""
    try:
        order = await ledger.get(db, session_id)
    except SQLAlchemyError as e:
        raise StoreUnavailableError(
            "Order lookup failed", session_id=session_id, cause=str(e)
        ) from e

    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    return OrderResponse.model_validate(order)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness() -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness() -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
