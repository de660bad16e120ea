"""
Order ledger: append-only, idempotent record of settled payments.

Idempotency rests on the unique constraint on ``stripe_session_id``; the
insert is ``INSERT ... ON CONFLICT (stripe_session_id) DO NOTHING RETURNING``,
so concurrent inserts for the same session produce exactly one row and every
other caller observes ``AlreadyExists``.

Order numbers (``CMD-2025-00421``) are a best-effort count of this year's
orders plus one. Two concurrent settlements may draw the same number; the
loser's insert violates the order-number constraint inside a SAVEPOINT and is
retried with a fresh count. That collision never decides idempotency.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_settlement.config import get_settings
from booking_settlement.core.exceptions import OrderNumberConflictError
from booking_settlement.database.models import Order

logger = structlog.get_logger(__name__)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass(frozen=True)
class SettlementRecord:
    """Everything the ledger stores for one settled payment, minus numbering."""

    payment_intent_id: Optional[str]
    amount_total: int
    currency: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str]
    booking_kind: str
    event_id: str
    places: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_title: Optional[str] = None
    event_place: Optional[str] = None
    event_date: Optional[str] = None
    event_hours: Optional[str] = None
    payment_status: str = "succeeded"


@dataclass(frozen=True)
class Inserted:
    order_id: uuid.UUID
    order_number: str


@dataclass(frozen=True)
class AlreadyExists:
    notification_id: str


InsertResult = Union[Inserted, AlreadyExists]


def format_order_number(prefix: str, year: int, sequence: int) -> str:
    """``CMD``, 2025, 421 -> ``CMD-2025-00421``."""
    return f"{prefix}-{year}-{sequence:05d}"


class OrderLedger:
    """Uniqueness-enforced store of settlement records."""

    def __init__(self, prefix: Optional[str] = None, max_attempts: Optional[int] = None):
        settings = get_settings()
        self.prefix = prefix or settings.order_number_prefix
        self.max_attempts = max_attempts or settings.order_number_max_attempts

    async def exists(self, db: AsyncSession, notification_id: str) -> bool:
        """Check whether a settlement record exists for this notification."""
        stmt = select(Order.id).where(Order.stripe_session_id == notification_id)
        return (await db.execute(stmt)).first() is not None

    async def get(self, db: AsyncSession, notification_id: str) -> Optional[Order]:
        """Return the settlement record for a notification, if any."""
        stmt = select(Order).where(Order.stripe_session_id == notification_id)
        return (await db.execute(stmt)).scalar_one_or_none()

    async def count_orders_for_year(self, db: AsyncSession, year: int) -> int:
        """Count the orders numbered in ``year``."""
        stmt = select(func.count(Order.id)).where(
            Order.order_number.like(f"{self.prefix}-{year}-%")
        )
        return int((await db.execute(stmt)).scalar_one())

    async def insert_if_absent(
        self,
        db: AsyncSession,
        notification_id: str,
        record: SettlementRecord,
    ) -> InsertResult:
        """
        Insert the record unless one already exists for ``notification_id``.

        Must run inside an open transaction. Each attempt runs in a SAVEPOINT
        so that an order-number collision rolls back only that attempt.

        Args:
            db: Database session with an open transaction
            notification_id: Stripe checkout session id (idempotency key)
            record: The settlement record

        Returns:
            InsertResult: ``Inserted`` or ``AlreadyExists``

        Raises:
            OrderNumberConflictError: If every attempt collided on the order number
        """
        insert = _DIALECT_INSERTS[db.get_bind().dialect.name]
        orders = Order.__table__

        for attempt in range(1, self.max_attempts + 1):
            now = datetime.now(timezone.utc)
            count = await self.count_orders_for_year(db, now.year)
            order_number = format_order_number(self.prefix, now.year, count + 1)
            order_id = uuid.uuid4()

            stmt = (
                insert(orders)
                .values(
                    id=order_id,
                    stripe_session_id=notification_id,
                    order_number=order_number,
                    payment_intent_id=record.payment_intent_id,
                    payment_status=record.payment_status,
                    amount_total=record.amount_total,
                    currency=record.currency,
                    customer_name=record.customer_name,
                    customer_email=record.customer_email,
                    customer_phone=record.customer_phone,
                    booking_kind=record.booking_kind,
                    event_id=record.event_id,
                    places=record.places,
                    metadata=record.metadata,
                    event_title=record.event_title,
                    event_place=record.event_place,
                    event_date=record.event_date,
                    event_hours=record.event_hours,
                    created_at=now,
                )
                .on_conflict_do_nothing(index_elements=[orders.c.stripe_session_id])
                .returning(orders.c.id)
            )

            try:
                async with db.begin_nested():
                    inserted_id = (await db.execute(stmt)).scalar_one_or_none()
            except IntegrityError as e:
                if "order_number" not in str(e.orig):
                    raise
                logger.warning(
                    "order_number_collision",
                    notification_id=notification_id,
                    order_number=order_number,
                    attempt=attempt,
                    error=str(e.orig),
                )
                continue

            if inserted_id is None:
                logger.info("order_already_exists", notification_id=notification_id)
                return AlreadyExists(notification_id=notification_id)

            logger.info(
                "order_inserted",
                notification_id=notification_id,
                order_number=order_number,
                attempt=attempt,
            )
            return Inserted(order_id=inserted_id, order_number=order_number)

        logger.error(
            "order_number_attempts_exhausted",
            notification_id=notification_id,
            attempts=self.max_attempts,
        )
        raise OrderNumberConflictError(notification_id, self.max_attempts)
