"""
Capacity store: atomic conditional reservation of event places.

Overselling is prevented by a single conditional UPDATE:

    UPDATE event_capacities
       SET remaining_places = remaining_places - :n
     WHERE kind = :kind AND event_id = :id AND is_active
       AND remaining_places >= :n
    RETURNING remaining_places, title, place, date, hours

The database evaluates the condition and applies the decrement under the
row lock, so two concurrent settlements can never both take the last place.
There is no read-then-write path and no retry.
"""
from dataclasses import dataclass
from typing import Union

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from booking_settlement.core.booking_metadata import BookingKind, EventSnapshot
from booking_settlement.database.models import EventCapacity
from booking_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Reserved:
    """Places were taken; ``snapshot`` holds the event's descriptive columns."""

    remaining_after: int
    snapshot: EventSnapshot


@dataclass(frozen=True)
class Exhausted:
    """The condition failed. ``reason`` is ``sold_out`` or ``unknown_event``."""

    reason: str


Reservation = Union[Reserved, Exhausted]


class CapacityStore:
    """Per-event remaining-capacity counters."""

    async def reserve(
        self,
        db: AsyncSession,
        kind: BookingKind,
        event_id: str,
        places: int,
    ) -> Reservation:
        """
        Take ``places`` from the event's remaining capacity if enough are left.

        Runs inside the caller's transaction: if the caller rolls back, the
        decrement is undone with it.

        Args:
            db: Database session with an open transaction
            kind: Event kind
            event_id: Event identifier
            places: Number of places to reserve (positive)

        Returns:
            Reservation: ``Reserved`` or ``Exhausted``

        Raises:
            ValueError: If ``places`` is not a positive integer
        """
        if isinstance(places, bool) or not isinstance(places, int) or places <= 0:
            raise ValueError(f"places must be a positive integer, got {places!r}")

        stmt = (
            update(EventCapacity)
            .where(
                EventCapacity.kind == kind.value,
                EventCapacity.event_id == event_id,
                EventCapacity.is_active.is_(True),
                EventCapacity.remaining_places >= places,
            )
            .values(remaining_places=EventCapacity.remaining_places - places)
            .returning(
                EventCapacity.remaining_places,
                EventCapacity.title,
                EventCapacity.place,
                EventCapacity.date,
                EventCapacity.hours,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        row = result.first()

        if row is not None:
            metrics.record_capacity_reservation(kind.value, "reserved")
            logger.info(
                "capacity_reserved",
                kind=kind.value,
                event_id=event_id,
                places=places,
                remaining_after=row.remaining_places,
            )
            return Reserved(
                remaining_after=row.remaining_places,
                snapshot=EventSnapshot(
                    title=row.title, place=row.place, date=row.date, hours=row.hours
                ),
            )

        reason = await self._classify_failure(db, kind, event_id)
        metrics.record_capacity_reservation(kind.value, reason)
        logger.info(
            "capacity_exhausted",
            kind=kind.value,
            event_id=event_id,
            places=places,
            reason=reason,
        )
        return Exhausted(reason=reason)

    @staticmethod
    async def _classify_failure(db: AsyncSession, kind: BookingKind, event_id: str) -> str:
        # Read only to label the outcome; the decision was already taken above.
        stmt = select(EventCapacity.is_active).where(
            EventCapacity.kind == kind.value,
            EventCapacity.event_id == event_id,
        )
        is_active = (await db.execute(stmt)).scalar_one_or_none()
        if is_active is None or not is_active:
            return "unknown_event"
        return "sold_out"
