"""
Tests for the settlement engine.
"""
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as SQLAlchemyTimeoutError
from structlog.testing import capture_logs

from booking_settlement.core.capacity_store import CapacityStore
from booking_settlement.core.exceptions import (
    AuthenticationError,
    CompensationFailure,
    StoreUnavailableError,
)
from booking_settlement.core.idempotency import SettledNotificationCache
from booking_settlement.core.order_ledger import OrderLedger
from booking_settlement.core.settlement_engine import SettlementEngine, SettlementOutcome
from booking_settlement.database.models import OutboxEvent, SettlementEvent
from booking_settlement.integrations.notification_verifier import StripeNotification

from factories import BrokenRedis, MockRedis, encode_event, make_checkout_event, sign_payload


def notification(**kwargs: Any) -> StripeNotification:
    return StripeNotification.model_validate(make_checkout_event(**kwargs))


async def audit_rows(session_factory: Any, notification_id: str) -> list:
    async with session_factory() as db:
        stmt = (
            select(SettlementEvent)
            .where(SettlementEvent.notification_id == notification_id)
            .order_by(SettlementEvent.id)
        )
        return list((await db.execute(stmt)).scalars().all())


@pytest.mark.integration
class TestSettlement:
    """Reserved -> settled."""

    @pytest.mark.asyncio
    async def test_settles_a_traineeship(
        self,
        settlement_engine: SettlementEngine,
        session_factory: Any,
        seed_event: Any,
        remaining_places: Any,
        traineeship_metadata: dict,
    ) -> None:
        await seed_event(remaining_places=10)

        result = await settlement_engine.settle(notification(metadata=traineeship_metadata))

        assert result.outcome is SettlementOutcome.SETTLED
        assert result.notification_id == "cs_test_001"
        assert result.order_number.startswith("CMD-")
        assert result.order_number.endswith("-00001")
        assert result.remaining_places == 8
        assert await remaining_places() == 8

        async with session_factory() as db:
            order = await OrderLedger().get(db, "cs_test_001")

        assert order.order_number == result.order_number
        assert order.payment_intent_id == "pi_test_001"
        assert order.payment_status == "succeeded"
        assert order.amount_total == 12000
        assert order.currency == "eur"
        assert order.customer_name == "Marie Curie"
        assert order.customer_email == "marie.curie@example.com"
        assert order.customer_phone == "0601020304"
        assert order.booking_kind == "traineeship"
        assert order.places == 2
        assert order.event_title == "Stage d'été"
        assert order.event_hours == "10h-17h"
        assert order.metadata_ == traineeship_metadata

    @pytest.mark.asyncio
    async def test_settlement_writes_audit_row_and_outbox_event(
        self,
        settlement_engine: SettlementEngine,
        session_factory: Any,
        seed_event: Any,
        traineeship_metadata: dict,
    ) -> None:
        await seed_event()

        result = await settlement_engine.settle(notification(metadata=traineeship_metadata))

        rows = await audit_rows(session_factory, "cs_test_001")
        assert [row.event_type for row in rows] == ["settlement.completed"]
        assert rows[0].event_data["order_number"] == result.order_number
        assert rows[0].event_data["remaining_after"] == 8

        async with session_factory() as db:
            events = list((await db.execute(select(OutboxEvent))).scalars().all())

        assert len(events) == 1
        assert events[0].event_type == "booking.confirmed"
        assert events[0].published is False
        assert events[0].payload["order_number"] == result.order_number
        assert events[0].payload["customer_email"] == "marie.curie@example.com"

    @pytest.mark.asyncio
    async def test_customer_falls_back_to_checkout_details(
        self, settlement_engine: SettlementEngine, session_factory: Any, seed_event: Any
    ) -> None:
        await seed_event(kind="show", event_id="show-42")
        metadata = {"type": "show", "eventId": "show-42", "adultes": "1", "enfants": "1"}

        await settlement_engine.settle(
            notification(
                metadata=metadata,
                customer_details={
                    "name": "Paul Langevin",
                    "email": "PAUL@example.com",
                    "phone": "+33612345678",
                },
            )
        )

        async with session_factory() as db:
            order = await OrderLedger().get(db, "cs_test_001")

        assert order.customer_name == "Paul Langevin"
        assert order.customer_email == "paul@example.com"
        assert order.customer_phone == "+33612345678"
        assert order.places == 2

    @pytest.mark.asyncio
    async def test_anonymous_name_when_none_is_known(
        self, settlement_engine: SettlementEngine, session_factory: Any, seed_event: Any
    ) -> None:
        await seed_event(kind="trial-course", event_id="yoga-mon-18h")
        metadata = {
            "type": "courses",
            "courseType": "trial",
            "eventId": "yoga-mon-18h",
            "email": "anon@example.com",
        }

        await settlement_engine.settle(notification(metadata=metadata))

        async with session_factory() as db:
            order = await OrderLedger().get(db, "cs_test_001")

        assert order.customer_name == "Anonyme"
        assert order.customer_phone is None
        assert order.places == 1
        assert order.booking_kind == "trial-course"

    @pytest.mark.asyncio
    async def test_snapshot_falls_back_to_capacity_row(
        self, settlement_engine: SettlementEngine, session_factory: Any, seed_event: Any
    ) -> None:
        await seed_event(
            kind="classic-course",
            event_id="pilates-thu",
            title="Pilates",
            place="Salle 2",
            date="jeudi",
            hours="19h",
        )
        metadata = {
            "type": "courses",
            "courseType": "classic",
            "eventId": "pilates-thu",
            "email": "a@example.com",
            "eventData": json.dumps({"title": "Pilates du jeudi"}),
        }

        await settlement_engine.settle(notification(metadata=metadata))

        async with session_factory() as db:
            order = await OrderLedger().get(db, "cs_test_001")

        assert order.event_title == "Pilates du jeudi"
        assert order.event_place == "Salle 2"
        assert order.event_date == "jeudi"
        assert order.event_hours == "19h"

    @pytest.mark.asyncio
    async def test_currency_defaults_when_missing(
        self,
        settlement_engine: SettlementEngine,
        session_factory: Any,
        seed_event: Any,
        traineeship_metadata: dict,
    ) -> None:
        await seed_event()
        event_body = make_checkout_event(metadata=traineeship_metadata)
        event_body["data"]["object"]["currency"] = None

        await settlement_engine.settle(StripeNotification.model_validate(event_body))

        async with session_factory() as db:
            order = await OrderLedger().get(db, "cs_test_001")

        assert order.currency == "eur"

    @pytest.mark.asyncio
    async def test_async_payment_succeeded_settles(
        self,
        settlement_engine: SettlementEngine,
        seed_event: Any,
        traineeship_metadata: dict,
    ) -> None:
        await seed_event()

        result = await settlement_engine.settle(
            notification(
                metadata=traineeship_metadata,
                event_type="checkout.session.async_payment_succeeded",
            )
        )

        assert result.outcome is SettlementOutcome.SETTLED


@pytest.mark.integration
class TestIdempotency:
    """Already-settled notifications."""

    @pytest.mark.asyncio
    async def test_redelivery_settles_once(
        self,
        settlement_engine: SettlementEngine,
        seed_event: Any,
        remaining_places: Any,
        order_count: Any,
        traineeship_metadata: dict,
    ) -> None:
        await seed_event(remaining_places=10)
        event = notification(metadata=traineeship_metadata)

        first = await settlement_engine.settle(event)
        second = await settlement_engine.settle(event)

        assert first.outcome is SettlementOutcome.SETTLED
        assert second.outcome is SettlementOutcome.DUPLICATE
        assert second.order_number is None
        assert await remaining_places() == 8
        assert await order_count() == 1

    @pytest.mark.asyncio
    async def test_cache_hit_skips_the_database(
        self, verifier: Any, mock_compensator: AsyncMock, traineeship_metadata: dict
    ) -> None:
        redis = MockRedis()
        redis.store["settled:cs_test_001"] = "CMD-2025-00001"
        session_factory = MagicMock()
        engine = SettlementEngine(
            session_factory=session_factory,
            verifier=verifier,
            compensator=mock_compensator,
            cache=SettledNotificationCache(redis_client=redis),
        )

        result = await engine.settle(notification(metadata=traineeship_metadata))

        assert result.outcome is SettlementOutcome.DUPLICATE
        session_factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_settlement_is_remembered_in_cache(
        self,
        session_factory: Any,
        verifier: Any,
        mock_compensator: AsyncMock,
        seed_event: Any,
        traineeship_metadata: dict,
    ) -> None:
        await seed_event()
        redis = MockRedis()
        engine = SettlementEngine(
            session_factory=session_factory,
            verifier=verifier,
            compensator=mock_compensator,
            cache=SettledNotificationCache(redis_client=redis, ttl_seconds=60),
        )

        result = await engine.settle(notification(metadata=traineeship_metadata))

        assert redis.store["settled:cs_test_001"] == result.order_number
        assert redis.ttls["settled:cs_test_001"] == 60

    @pytest.mark.asyncio
    async def test_redis_outage_falls_through_to_ledger(
        self,
        session_factory: Any,
        verifier: Any,
        mock_compensator: AsyncMock,
        seed_event: Any,
        remaining_places: Any,
        traineeship_metadata: dict,
    ) -> None:
        await seed_event(remaining_places=10)
        engine = SettlementEngine(
            session_factory=session_factory,
            verifier=verifier,
            compensator=mock_compensator,
            cache=SettledNotificationCache(redis_client=BrokenRedis()),
        )
        event = notification(metadata=traineeship_metadata)

        with capture_logs() as logs:
            first = await engine.settle(event)
            second = await engine.settle(event)

        assert first.outcome is SettlementOutcome.SETTLED
        assert second.outcome is SettlementOutcome.DUPLICATE
        assert await remaining_places() == 8
        assert any(entry["event"] == "settled_cache_read_error" for entry in logs)

    @pytest.mark.asyncio
    async def test_lost_insert_race_rolls_back_the_reservation(
        self,
        settlement_engine: SettlementEngine,
        session_factory: Any,
        seed_event: Any,
        remaining_places: Any,
        order_count: Any,
        traineeship_metadata: dict,
        mocker: Any,
    ) -> None:
        await seed_event(remaining_places=10)
        event = notification(metadata=traineeship_metadata)
        await settlement_engine.settle(event)
        assert await remaining_places() == 8

        # A concurrent delivery that passed the idempotency check before the
        # winner committed.
        mocker.patch.object(settlement_engine.ledger, "exists", return_value=False)

        result = await settlement_engine.settle(event)

        assert result.outcome is SettlementOutcome.DUPLICATE
        assert await remaining_places() == 8
        assert await order_count() == 1

        rows = await audit_rows(session_factory, "cs_test_001")
        assert [row.event_type for row in rows] == [
            "settlement.completed",
            "settlement.race_rolled_back",
        ]
        assert rows[1].event_data["places_released"] == 2

    @pytest.mark.asyncio
    async def test_redelivery_that_finds_the_event_full_is_not_refunded(
        self,
        settlement_engine: SettlementEngine,
        session_factory: Any,
        mock_compensator: AsyncMock,
        seed_event: Any,
        remaining_places: Any,
        order_count: Any,
        traineeship_metadata: dict,
        mocker: Any,
    ) -> None:
        await seed_event(remaining_places=2)
        event = notification(metadata=traineeship_metadata)
        first = await settlement_engine.settle(event)
        assert first.outcome is SettlementOutcome.SETTLED
        assert await remaining_places() == 0

        # A concurrent delivery that read the ledger before the winner
        # committed, then found the last places gone.
        mocker.patch.object(settlement_engine.ledger, "exists", return_value=False)

        result = await settlement_engine.settle(event)

        assert result.outcome is SettlementOutcome.DUPLICATE
        assert result.refund_id is None
        mock_compensator.refund.assert_not_called()
        assert await remaining_places() == 0
        assert await order_count() == 1

        rows = await audit_rows(session_factory, "cs_test_001")
        assert [row.event_type for row in rows] == ["settlement.completed"]


@pytest.mark.integration
class TestCompensation:
    """Exhausted -> refund, no order, no capacity change."""

    @pytest.mark.asyncio
    async def test_full_event_is_refunded(
        self,
        settlement_engine: SettlementEngine,
        session_factory: Any,
        mock_compensator: AsyncMock,
        seed_event: Any,
        remaining_places: Any,
        order_count: Any,
        traineeship_metadata: dict,
    ) -> None:
        await seed_event(remaining_places=1)

        result = await settlement_engine.settle(notification(metadata=traineeship_metadata))

        assert result.outcome is SettlementOutcome.EXHAUSTED
        assert result.reason == "sold_out"
        assert result.refund_id == "re_test_123"
        assert result.compensation_failed is False
        mock_compensator.refund.assert_awaited_once_with("pi_test_001", "cs_test_001")
        assert await remaining_places() == 1
        assert await order_count() == 0

        rows = await audit_rows(session_factory, "cs_test_001")
        assert [row.event_type for row in rows] == ["compensation.succeeded"]
        assert rows[0].event_data["refund_id"] == "re_test_123"

    @pytest.mark.asyncio
    async def test_unknown_event_is_refunded(
        self,
        settlement_engine: SettlementEngine,
        mock_compensator: AsyncMock,
        traineeship_metadata: dict,
    ) -> None:
        result = await settlement_engine.settle(notification(metadata=traineeship_metadata))

        assert result.outcome is SettlementOutcome.EXHAUSTED
        assert result.reason == "unknown_event"
        mock_compensator.refund.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_refund_is_logged_and_audited(
        self,
        settlement_engine: SettlementEngine,
        session_factory: Any,
        mock_compensator: AsyncMock,
        seed_event: Any,
        traineeship_metadata: dict,
    ) -> None:
        await seed_event(remaining_places=0)
        mock_compensator.refund.side_effect = CompensationFailure(
            "Refund failed: card_declined", payment_reference="pi_test_001"
        )

        with capture_logs() as logs:
            result = await settlement_engine.settle(notification(metadata=traineeship_metadata))

        assert result.outcome is SettlementOutcome.EXHAUSTED
        assert result.compensation_failed is True
        assert result.refund_id is None
        mock_compensator.refund.assert_awaited_once()
        assert any(
            entry["event"] == "compensation_failed" and entry["log_level"] == "error"
            for entry in logs
        )

        rows = await audit_rows(session_factory, "cs_test_001")
        assert [row.event_type for row in rows] == ["compensation.failed"]
        assert rows[0].event_data["payment_reference"] == "pi_test_001"

    @pytest.mark.asyncio
    async def test_refund_uses_session_payment_reference(
        self,
        settlement_engine: SettlementEngine,
        mock_compensator: AsyncMock,
        seed_event: Any,
        traineeship_metadata: dict,
    ) -> None:
        await seed_event(remaining_places=0)

        await settlement_engine.settle(
            notification(
                session_id="cs_test_full",
                payment_intent="pi_test_full",
                metadata=traineeship_metadata,
            )
        )

        mock_compensator.refund.assert_awaited_once_with("pi_test_full", "cs_test_full")


@pytest.mark.unit
class TestNoStoreCalls:
    """Outcomes decided before any store is touched."""

    @pytest.fixture
    def isolated_engine(self, verifier: Any, mock_compensator: AsyncMock) -> SettlementEngine:
        capacity_store = AsyncMock(spec=CapacityStore)
        ledger = AsyncMock(spec=OrderLedger)
        return SettlementEngine(
            session_factory=MagicMock(),
            verifier=verifier,
            capacity_store=capacity_store,
            ledger=ledger,
            compensator=mock_compensator,
            cache=SettledNotificationCache(redis_url=""),
        )

    def assert_untouched(self, engine: SettlementEngine, compensator: AsyncMock) -> None:
        engine.session_factory.assert_not_called()
        engine.capacity_store.reserve.assert_not_called()
        engine.ledger.exists.assert_not_called()
        engine.ledger.insert_if_absent.assert_not_called()
        compensator.refund.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "metadata",
        [
            {},
            {"eventId": "stage-2025-07-15", "nombreParticipants": "1"},
            {"type": "concert", "eventId": "x", "email": "a@example.com"},
            {"type": "traineeship", "eventId": "x", "email": "a@example.com"},
        ],
    )
    async def test_malformed_metadata_is_acknowledged_with_warning(
        self, isolated_engine: SettlementEngine, mock_compensator: AsyncMock, metadata: dict
    ) -> None:
        with capture_logs() as logs:
            result = await isolated_engine.settle(notification(metadata=metadata))

        assert result.outcome is SettlementOutcome.MALFORMED
        self.assert_untouched(isolated_engine, mock_compensator)
        warnings = [entry for entry in logs if entry["log_level"] == "warning"]
        assert [entry["event"] for entry in warnings] == ["booking_metadata_malformed"]

    @pytest.mark.asyncio
    async def test_missing_customer_email_is_malformed(
        self, isolated_engine: SettlementEngine, mock_compensator: AsyncMock
    ) -> None:
        metadata = {"type": "show", "eventId": "show-42", "adultes": "2"}

        result = await isolated_engine.settle(
            notification(metadata=metadata, customer_details={"name": "No Mail"})
        )

        assert result.outcome is SettlementOutcome.MALFORMED
        self.assert_untouched(isolated_engine, mock_compensator)

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_ignored(
        self, isolated_engine: SettlementEngine, mock_compensator: AsyncMock
    ) -> None:
        result = await isolated_engine.settle(
            notification(event_type="payment_intent.created", event_id="evt_other")
        )

        assert result.outcome is SettlementOutcome.IGNORED
        assert result.notification_id == "evt_other"
        self.assert_untouched(isolated_engine, mock_compensator)

    @pytest.mark.asyncio
    async def test_unpaid_session_is_ignored(
        self,
        isolated_engine: SettlementEngine,
        mock_compensator: AsyncMock,
        traineeship_metadata: dict,
    ) -> None:
        result = await isolated_engine.settle(
            notification(metadata=traineeship_metadata, payment_status="unpaid")
        )

        assert result.outcome is SettlementOutcome.IGNORED
        assert result.reason == "payment_not_completed"
        self.assert_untouched(isolated_engine, mock_compensator)

    @pytest.mark.asyncio
    async def test_checkout_object_without_id_is_malformed(
        self, isolated_engine: SettlementEngine, mock_compensator: AsyncMock
    ) -> None:
        event_body = make_checkout_event()
        del event_body["data"]["object"]["id"]

        result = await isolated_engine.settle(StripeNotification.model_validate(event_body))

        assert result.outcome is SettlementOutcome.MALFORMED
        self.assert_untouched(isolated_engine, mock_compensator)

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected_before_any_store_call(
        self,
        isolated_engine: SettlementEngine,
        mock_compensator: AsyncMock,
        traineeship_metadata: dict,
    ) -> None:
        payload = encode_event(make_checkout_event(metadata=traineeship_metadata))

        with pytest.raises(AuthenticationError):
            await isolated_engine.process(payload, sign_payload(payload, secret="whsec_wrong"))

        self.assert_untouched(isolated_engine, mock_compensator)


@pytest.mark.integration
class TestStoreFaults:
    """Faults that must make Stripe redeliver."""

    @pytest.mark.asyncio
    async def test_database_error_raises_store_unavailable(
        self,
        settlement_engine: SettlementEngine,
        seed_event: Any,
        remaining_places: Any,
        traineeship_metadata: dict,
        mocker: Any,
    ) -> None:
        await seed_event(remaining_places=10)
        mocker.patch.object(
            settlement_engine.capacity_store,
            "reserve",
            side_effect=OperationalError("UPDATE event_capacities", {}, Exception("db down")),
        )

        with pytest.raises(StoreUnavailableError):
            await settlement_engine.settle(notification(metadata=traineeship_metadata))

        assert await remaining_places() == 10

    @pytest.mark.asyncio
    async def test_failed_insert_releases_the_reservation(
        self,
        settlement_engine: SettlementEngine,
        seed_event: Any,
        remaining_places: Any,
        order_count: Any,
        traineeship_metadata: dict,
        mocker: Any,
    ) -> None:
        await seed_event(remaining_places=10)
        mocker.patch.object(
            settlement_engine.ledger,
            "insert_if_absent",
            side_effect=OperationalError("INSERT INTO orders", {}, Exception("disk I/O error")),
        )

        with pytest.raises(StoreUnavailableError):
            await settlement_engine.settle(notification(metadata=traineeship_metadata))

        assert await remaining_places() == 10
        assert await order_count() == 0

    @pytest.mark.asyncio
    async def test_pool_timeout_raises_store_unavailable(
        self,
        settlement_engine: SettlementEngine,
        seed_event: Any,
        remaining_places: Any,
        traineeship_metadata: dict,
        mocker: Any,
    ) -> None:
        await seed_event(remaining_places=10)
        mocker.patch.object(
            settlement_engine.capacity_store,
            "reserve",
            side_effect=SQLAlchemyTimeoutError("QueuePool limit of size 20 overflow 50 reached"),
        )

        with pytest.raises(StoreUnavailableError):
            await settlement_engine.settle(notification(metadata=traineeship_metadata))

        assert await remaining_places() == 10
