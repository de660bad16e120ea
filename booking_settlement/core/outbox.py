"""
Transactional outbox.

Settlement writes a ``booking.confirmed`` event in the same transaction as the
order, so the event exists if and only if the order does. The publisher then
delivers events at least once to the confirmation sender; a publish failure
leaves the event pending for the next batch and never touches the order.
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_exponential

from booking_settlement.config import get_settings
from booking_settlement.database.connection import get_session_factory
from booking_settlement.database.models import OutboxEvent
from booking_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

BOOKING_CONFIRMED = "booking.confirmed"

PublisherFunc = Callable[[Dict[str, Any]], Awaitable[None]]


def add_outbox_event(
    db: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    payload: Dict[str, Any],
) -> OutboxEvent:
    """Stage an outbox event in the caller's transaction."""
    event = OutboxEvent(
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        event_type=event_type,
        payload=payload,
        published=False,
        created_at=datetime.now(timezone.utc),
    )
    db.add(event)
    return event


class OutboxPublisher:
    """
    Publishes events from the outbox table.

    1. Read a batch of unpublished events, oldest first
    2. Publish each one, retrying with exponential backoff
    3. Mark the published ones in the database
    """

    def __init__(
        self,
        publisher_func: Optional[PublisherFunc] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
        publish_attempts: Optional[int] = None,
        retry_multiplier: float = 0.5,
    ):
        """
        Initialize outbox publisher.

        Args:
            publisher_func: Coroutine delivering one event
            session_factory: Session factory (the application's by default)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval when the outbox is empty
            publish_attempts: Attempts per event within one batch
            retry_multiplier: Exponential backoff multiplier between attempts
        """
        settings = get_settings()
        self.publisher_func = publisher_func or self._default_publisher
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.outbox_batch_size
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else settings.outbox_poll_interval_seconds
        )
        self.publish_attempts = publish_attempts or settings.outbox_publish_attempts
        self.retry_multiplier = retry_multiplier
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=self.batch_size,
            poll_interval=self.poll_interval_seconds,
            publish_attempts=self.publish_attempts,
        )

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory or get_session_factory()

    async def _default_publisher(self, event_data: Dict[str, Any]) -> None:
        logger.info(
            "outbox_event_published_default",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event, retrying transient failures.

        Returns:
            bool: True if published, False if every attempt failed
        """
        event_data = {
            "id": event.id,
            "aggregate_id": event.aggregate_id,
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": event.payload,
            "created_at": event.created_at.isoformat(),
        }

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.publish_attempts),
                wait=wait_exponential(multiplier=self.retry_multiplier, max=10),
            ):
                with attempt:
                    await self.publisher_func(event_data)
        except RetryError as e:
            metrics.record_outbox_publish_failure(event.event_type)
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                attempts=self.publish_attempts,
                error=str(e.last_attempt.exception()),
            )
            return False

        metrics.record_outbox_event_published(event.event_type)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=event.aggregate_id,
        )
        return True

    async def _mark_as_published(self, db: AsyncSession, event_ids: List[int]) -> None:
        if not event_ids:
            return

        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(published=True, published_at=datetime.now(timezone.utc))
        )
        await db.execute(stmt)
        await db.commit()

        logger.info("outbox_events_marked_published", count=len(event_ids))

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        start_time = time.time()
        async with self._sessions()() as db:
            events = await self._fetch_unpublished_events(db)
            if not events:
                return 0

            logger.info("outbox_batch_processing_started", batch_size=len(events))

            published_ids = []
            for event in events:
                if await self._publish_event(event):
                    published_ids.append(event.id)

            await self._mark_as_published(db, published_ids)

        metrics.record_outbox_batch(time.time() - start_time)
        logger.info(
            "outbox_batch_processed",
            total=len(events),
            published=len(published_ids),
            failed=len(events) - len(published_ids),
        )
        return len(published_ids)

    async def get_pending_count(self) -> int:
        """Number of unpublished events."""
        async with self._sessions()() as db:
            stmt = select(func.count(OutboxEvent.id)).where(OutboxEvent.published.is_(False))
            count = int((await db.execute(stmt)).scalar_one())
        metrics.set_outbox_queue_depth(count)
        return count

    async def start(self) -> None:
        """Poll the outbox until ``stop`` is called."""
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    await self.get_pending_count()
                except (SQLAlchemyError, OSError) as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    published_count = 0
                if published_count == 0:
                    await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")
