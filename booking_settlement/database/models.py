"""SQLAlchemy database models for the booking settlement service."""
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in the test-suite)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only auto-increments INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

BOOKING_KINDS = ("traineeship", "show", "classic-course", "trial-course")
PAYMENT_STATUSES = ("pending", "succeeded", "failed", "refunded")


def _in_clause(values: tuple[str, ...]) -> str:
    return ", ".join(f"'{v}'" for v in values)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class EventCapacity(Base):
    """
    Remaining capacity of a bookable event.

    Only ``remaining_places`` is authoritative. It is decremented exclusively
    through the conditional update in ``CapacityStore.reserve``; the CHECK
    constraint is the last line against a negative count.
    """

    __tablename__ = "event_capacities"

    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    place: Mapped[str | None] = mapped_column(String(255), nullable=True)
    date: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hours: Mapped[str | None] = mapped_column(String(64), nullable=True)
    remaining_places: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("remaining_places >= 0", name="non_negative_remaining_places"),
        CheckConstraint(f"kind IN ({_in_clause(BOOKING_KINDS)})", name="valid_event_kind"),
    )

    def __repr__(self) -> str:
        """String representation of EventCapacity."""
        return (
            f"<EventCapacity(kind={self.kind}, event_id={self.event_id}, "
            f"remaining={self.remaining_places})>"
        )


class Order(Base):
    """
    Settlement records (the order ledger).

    One row per settled Stripe checkout session. ``stripe_session_id`` is the
    idempotency key; its unique constraint is what makes concurrent
    deliveries of the same notification settle exactly once.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    stripe_session_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="succeeded")
    amount_total: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="eur")
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    customer_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    booking_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    places: Mapped[int] = mapped_column(Integer, nullable=False)
    metadata_: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    event_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_place: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_date: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_hours: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (
        CheckConstraint("amount_total >= 0", name="non_negative_amount"),
        CheckConstraint("places > 0", name="positive_places"),
        CheckConstraint(
            f"payment_status IN ({_in_clause(PAYMENT_STATUSES)})",
            name="valid_payment_status",
        ),
        CheckConstraint(f"booking_kind IN ({_in_clause(BOOKING_KINDS)})", name="valid_booking_kind"),
        Index("idx_orders_event", "booking_kind", "event_id"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(order_number={self.order_number}, "
            f"session={self.stripe_session_id}, kind={self.booking_kind})>"
        )


class SettlementEvent(Base):
    """
    Settlement audit trail.

    Immutable once written. Compensation rows are what the out-of-band
    reconciliation job reads to find refunds that still need attention.
    """

    __tablename__ = "settlement_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    notification_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (Index("idx_settlement_events_type", "event_type"),)

    def __repr__(self) -> str:
        """String representation of SettlementEvent."""
        return (
            f"<SettlementEvent(id={self.id}, notification_id={self.notification_id}, "
            f"type={self.event_type})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Events are written in the same transaction as the settlement record,
    then published asynchronously by the outbox worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(255), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
