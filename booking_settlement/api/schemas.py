"""
Pydantic schemas for API responses.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class WebhookResponse(BaseModel):
    """Acknowledgment returned to Stripe for every application outcome."""

    status: str = Field(..., description="settled, duplicate, exhausted, malformed or ignored")
    notification_id: str = Field(..., description="Checkout session id (or event id if none)")
    order_number: Optional[str] = Field(default=None, description="Order number when settled")
    refund_id: Optional[str] = Field(default=None, description="Refund id when exhausted")
    compensation_failed: bool = Field(
        default=False, description="True when the compensating refund could not be issued"
    )
    message: Optional[str] = Field(default=None, description="Status message")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "status": "settled",
                    "notification_id": "cs_test_a1b2c3",
                    "order_number": "CMD-2025-00421",
                    "refund_id": None,
                    "compensation_failed": False,
                    "message": None,
                }
            ]
        }
    }


class OrderResponse(BaseModel):
    """A settled order, as stored in the ledger."""

    model_config = ConfigDict(from_attributes=True)

    order_number: str
    stripe_session_id: str
    payment_status: str
    amount_total: int
    currency: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    booking_kind: str
    event_id: str
    places: int
    event_title: Optional[str] = None
    event_place: Optional[str] = None
    event_date: Optional[str] = None
    event_hours: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("metadata_", "metadata")
    )
    created_at: datetime


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
