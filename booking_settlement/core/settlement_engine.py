"""
Settlement engine: turns a verified "payment completed" notification into
exactly one order, or into a refund when the event is full.

Per notification:

    Verifying -> CheckingIdempotency -> ReservingCapacity -> Settling | Compensating -> Done

Guarantees:
- Idempotency: the order ledger's unique ``stripe_session_id`` decides. The
  Redis cache only short-circuits notifications it positively remembers.
- No oversell: capacity is taken by one conditional UPDATE.
- Reservation and order insertion share one database transaction. When two
  deliveries of the same notification race past the idempotency check, the
  loser's insert finds the winner's row and its whole transaction, decrement
  included, is rolled back. Capacity is never lost to the race.
- Exhaustion consumes nothing and triggers exactly one refund call. Before
  refunding, the ledger is read again in a fresh transaction: a concurrent
  delivery of the same notification may have taken the last places and
  committed the order while this one waited on the row lock.

The engine holds no state between notifications and takes no locks; all
coordination happens in the database.
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_settlement.config import get_settings
from booking_settlement.core.booking_metadata import BookingRequest, parse_booking_request
from booking_settlement.core.capacity_store import CapacityStore, Exhausted, Reserved
from booking_settlement.core.compensator import Compensator
from booking_settlement.core.exceptions import (
    CompensationFailure,
    MalformedMetadataError,
    StoreUnavailableError,
)
from booking_settlement.core.idempotency import SettledNotificationCache
from booking_settlement.core.order_ledger import AlreadyExists, OrderLedger, SettlementRecord
from booking_settlement.core.outbox import BOOKING_CONFIRMED, add_outbox_event
from booking_settlement.database.models import SettlementEvent
from booking_settlement.integrations.notification_verifier import (
    CheckoutSession,
    NotificationVerifier,
    StripeNotification,
)
from booking_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SETTLEABLE_PAYMENT_STATUSES = frozenset({"paid", "no_payment_required"})


class SettlementOutcome(str, Enum):
    """Terminal outcome of one notification. All of them are acknowledged with 200."""

    SETTLED = "settled"
    DUPLICATE = "duplicate"
    EXHAUSTED = "exhausted"
    MALFORMED = "malformed"
    IGNORED = "ignored"


@dataclass(frozen=True)
class SettlementResult:
    outcome: SettlementOutcome
    notification_id: str
    order_number: Optional[str] = None
    remaining_places: Optional[int] = None
    refund_id: Optional[str] = None
    compensation_failed: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class _Settled:
    order_number: str
    remaining_after: int


@dataclass(frozen=True)
class _LostRace:
    pass


class SettlementEngine:
    """Orchestrates verification, idempotency, reservation, settlement and compensation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verifier: Optional[NotificationVerifier] = None,
        capacity_store: Optional[CapacityStore] = None,
        ledger: Optional[OrderLedger] = None,
        compensator: Optional[Compensator] = None,
        cache: Optional[SettledNotificationCache] = None,
    ):
        self.settings = get_settings()
        self.session_factory = session_factory
        self.verifier = verifier or NotificationVerifier()
        self.capacity_store = capacity_store or CapacityStore()
        self.ledger = ledger or OrderLedger()
        self.compensator = compensator or Compensator()
        self.cache = cache or SettledNotificationCache()

    async def process(self, payload: bytes, signature: Optional[str]) -> SettlementResult:
        """
        Verify a raw webhook delivery and settle it.

        Raises:
            AuthenticationError: If the delivery is not provably from Stripe
            StoreUnavailableError: If the outcome could not be determined or recorded
        """
        notification = self.verifier.verify(payload, signature)
        return await self.settle(notification)

    async def settle(self, notification: StripeNotification) -> SettlementResult:
        """
        Settle a verified notification.

        Args:
            notification: Verified Stripe event

        Returns:
            SettlementResult: The terminal outcome

        Raises:
            StoreUnavailableError: If the outcome could not be determined or recorded
        """
        start_time = time.time()
        metrics.record_webhook_received(notification.type)
        log = logger.bind(stripe_event_id=notification.id, event_type=notification.type)

        if not notification.is_checkout_settlement:
            log.info("notification_ignored", reason="unhandled_event_type")
            return self._finish(
                SettlementResult(
                    SettlementOutcome.IGNORED, notification.id, reason="unhandled_event_type"
                ),
                "unknown",
                start_time,
            )

        try:
            session = notification.checkout_session()
        except MalformedMetadataError as e:
            log.warning("checkout_session_malformed", error=e.message, field=e.field)
            return self._finish(
                SettlementResult(SettlementOutcome.MALFORMED, notification.id, reason=e.message),
                "unknown",
                start_time,
            )

        log = log.bind(notification_id=session.id)

        if session.payment_status not in SETTLEABLE_PAYMENT_STATUSES:
            log.info(
                "notification_ignored",
                reason="payment_not_completed",
                payment_status=session.payment_status,
            )
            return self._finish(
                SettlementResult(
                    SettlementOutcome.IGNORED, session.id, reason="payment_not_completed"
                ),
                "unknown",
                start_time,
            )

        # Trust boundary: nothing below runs on metadata that failed to parse.
        try:
            booking = parse_booking_request(session.metadata)
            customer_email = self._customer_email(booking, session)
        except MalformedMetadataError as e:
            log.warning(
                "booking_metadata_malformed",
                error=e.message,
                field=e.field,
                metadata=session.metadata,
            )
            return self._finish(
                SettlementResult(SettlementOutcome.MALFORMED, session.id, reason=e.message),
                "unknown",
                start_time,
            )

        kind = booking.kind.value
        log = log.bind(booking_kind=kind, event_id=booking.event_id)

        if await self.cache.is_settled(session.id):
            metrics.record_idempotency_hit("redis")
            log.info("notification_already_settled", source="redis")
            return self._finish(
                SettlementResult(SettlementOutcome.DUPLICATE, session.id), kind, start_time
            )

        try:
            result = await self._reserve_and_settle(session, booking, customer_email)
        except SQLAlchemyError as e:
            log.error("settlement_store_unavailable", error=str(e))
            raise StoreUnavailableError(
                "Could not settle notification", notification_id=session.id
            ) from e
        except OSError as e:
            log.error("settlement_store_unreachable", error=str(e))
            raise StoreUnavailableError(
                "Could not reach the settlement store", notification_id=session.id
            ) from e

        if result.outcome is SettlementOutcome.EXHAUSTED:
            result = await self._compensate(session, result)

        return self._finish(result, kind, start_time)

    async def _reserve_and_settle(
        self,
        session: CheckoutSession,
        booking: BookingRequest,
        customer_email: str,
    ) -> SettlementResult:
        notification_id = session.id

        async with self.session_factory() as db:
            if await self.ledger.exists(db, notification_id):
                await db.rollback()
                metrics.record_idempotency_hit("database")
                logger.info(
                    "notification_already_settled",
                    notification_id=notification_id,
                    source="database",
                )
                return SettlementResult(SettlementOutcome.DUPLICATE, notification_id)

            reservation = await self.capacity_store.reserve(
                db, booking.kind, booking.event_id, booking.places_requested
            )
            if isinstance(reservation, Exhausted):
                await db.rollback()
            else:
                settled = await self._record_settlement(
                    db, session, booking, customer_email, reservation
                )
                if isinstance(settled, _LostRace):
                    await db.rollback()
                else:
                    await db.commit()

        if isinstance(reservation, Exhausted):
            if await self._settled_meanwhile(notification_id):
                return SettlementResult(SettlementOutcome.DUPLICATE, notification_id)
            return SettlementResult(
                SettlementOutcome.EXHAUSTED, notification_id, reason=reservation.reason
            )

        if isinstance(settled, _LostRace):
            metrics.record_settlement_race()
            logger.warning(
                "settlement_race_rolled_back",
                notification_id=notification_id,
                event_id=booking.event_id,
                places=booking.places_requested,
            )
            await self._audit(
                notification_id,
                "settlement.race_rolled_back",
                {
                    "booking_kind": booking.kind.value,
                    "event_id": booking.event_id,
                    "places_released": booking.places_requested,
                },
            )
            return SettlementResult(SettlementOutcome.DUPLICATE, notification_id)

        await self.cache.mark_settled(notification_id, settled.order_number)
        logger.info(
            "settlement_completed",
            notification_id=notification_id,
            order_number=settled.order_number,
            booking_kind=booking.kind.value,
            event_id=booking.event_id,
            places=booking.places_requested,
            remaining_after=settled.remaining_after,
        )
        return SettlementResult(
            SettlementOutcome.SETTLED,
            notification_id,
            order_number=settled.order_number,
            remaining_places=settled.remaining_after,
        )

    async def _settled_meanwhile(self, notification_id: str) -> bool:
        """Whether a concurrent delivery committed the order after our idempotency check."""
        async with self.session_factory() as db:
            order = await self.ledger.get(db, notification_id)
        if order is None:
            return False
        metrics.record_idempotency_hit("database")
        logger.info(
            "notification_settled_concurrently",
            notification_id=notification_id,
            order_number=order.order_number,
        )
        return True

    async def _record_settlement(
        self,
        db: AsyncSession,
        session: CheckoutSession,
        booking: BookingRequest,
        customer_email: str,
        reservation: Reserved,
    ) -> "_Settled | _LostRace":
        record = self._build_record(session, booking, customer_email, reservation)
        inserted = await self.ledger.insert_if_absent(db, session.id, record)
        if isinstance(inserted, AlreadyExists):
            return _LostRace()

        db.add(
            SettlementEvent(
                notification_id=session.id,
                event_type="settlement.completed",
                event_data={
                    "order_number": inserted.order_number,
                    "booking_kind": record.booking_kind,
                    "event_id": record.event_id,
                    "places": record.places,
                    "remaining_after": reservation.remaining_after,
                    "amount_total": record.amount_total,
                    "currency": record.currency,
                },
            )
        )
        add_outbox_event(
            db,
            aggregate_id=str(inserted.order_id),
            aggregate_type="order",
            event_type=BOOKING_CONFIRMED,
            payload={
                "order_number": inserted.order_number,
                "stripe_session_id": session.id,
                "customer_name": record.customer_name,
                "customer_email": record.customer_email,
                "customer_phone": record.customer_phone,
                "booking_kind": record.booking_kind,
                "event_id": record.event_id,
                "places": record.places,
                "amount_total": record.amount_total,
                "currency": record.currency,
                "event_title": record.event_title,
                "event_place": record.event_place,
                "event_date": record.event_date,
                "event_hours": record.event_hours,
                "metadata": record.metadata,
            },
        )
        await db.flush()
        return _Settled(
            order_number=inserted.order_number,
            remaining_after=reservation.remaining_after,
        )

    def _customer_email(self, booking: BookingRequest, session: CheckoutSession) -> str:
        details = session.customer_details
        email = booking.customer.email or (details.email if details else None)
        if not email or not email.strip():
            raise MalformedMetadataError("No customer email on the booking", field="email")
        return email.strip().lower()

    def _build_record(
        self,
        session: CheckoutSession,
        booking: BookingRequest,
        customer_email: str,
        reservation: Reserved,
    ) -> SettlementRecord:
        details = session.customer_details
        name = booking.customer.name or (details.name if details else None)
        phone = booking.customer.phone or (details.phone if details else None)

        # Metadata snapshot first, then the capacity row, field by field.
        ours, theirs = booking.snapshot, reservation.snapshot
        metadata: Dict[str, Any] = dict(session.metadata)

        return SettlementRecord(
            payment_intent_id=session.payment_intent,
            amount_total=session.amount_total or 0,
            currency=(session.currency or self.settings.default_currency).lower(),
            customer_name=name or self.settings.anonymous_customer_name,
            customer_email=customer_email,
            customer_phone=phone,
            booking_kind=booking.kind.value,
            event_id=booking.event_id,
            places=booking.places_requested,
            metadata=metadata,
            event_title=ours.title or theirs.title,
            event_place=ours.place or theirs.place,
            event_date=ours.date or theirs.date,
            event_hours=ours.hours or theirs.hours,
        )

    async def _compensate(
        self, session: CheckoutSession, result: SettlementResult
    ) -> SettlementResult:
        """Refund once. Failures are logged and audited, never raised."""
        try:
            refunded = await self.compensator.refund(session.payment_intent, session.id)
        except CompensationFailure as e:
            logger.error(
                "compensation_failed",
                notification_id=session.id,
                payment_reference=e.payment_reference,
                reason=result.reason,
                error=e.message,
            )
            await self._audit(
                session.id,
                "compensation.failed",
                {
                    "payment_reference": e.payment_reference,
                    "reason": result.reason,
                    "error": e.message,
                    "amount_total": session.amount_total,
                },
            )
            return SettlementResult(
                SettlementOutcome.EXHAUSTED,
                session.id,
                compensation_failed=True,
                reason=result.reason,
            )

        logger.info(
            "compensation_succeeded",
            notification_id=session.id,
            refund_id=refunded.refund_id,
            reason=result.reason,
        )
        await self._audit(
            session.id,
            "compensation.succeeded",
            {
                "payment_reference": session.payment_intent,
                "refund_id": refunded.refund_id,
                "refund_status": refunded.status,
                "reason": result.reason,
                "amount_total": session.amount_total,
            },
        )
        return SettlementResult(
            SettlementOutcome.EXHAUSTED,
            session.id,
            refund_id=refunded.refund_id,
            reason=result.reason,
        )

    async def _audit(
        self, notification_id: str, event_type: str, event_data: Dict[str, Any]
    ) -> None:
        """Append an audit row in its own transaction. A failed write is only logged."""
        try:
            async with self.session_factory() as db:
                db.add(
                    SettlementEvent(
                        notification_id=notification_id,
                        event_type=event_type,
                        event_data=event_data,
                    )
                )
                await db.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "settlement_audit_write_failed",
                notification_id=notification_id,
                audit_event_type=event_type,
                error=str(e),
            )

    @staticmethod
    def _finish(result: SettlementResult, booking_kind: str, start_time: float) -> SettlementResult:
        metrics.record_settlement(result.outcome.value, booking_kind, time.time() - start_time)
        return result
