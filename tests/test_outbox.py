"""
Tests for the transactional outbox and its publisher.
"""
from typing import Any, Dict, List

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_settlement.core.outbox import BOOKING_CONFIRMED, OutboxPublisher, add_outbox_event
from booking_settlement.core.settlement_engine import SettlementEngine
from booking_settlement.database.models import OutboxEvent
from booking_settlement.integrations.notification_verifier import StripeNotification
from booking_settlement.workers.outbox_publisher import publish_booking_event

from factories import make_checkout_event


async def stage_events(session_factory: async_sessionmaker[AsyncSession], count: int) -> None:
    async with session_factory() as db:
        for i in range(count):
            add_outbox_event(
                db,
                aggregate_id=f"order-{i}",
                aggregate_type="order",
                event_type=BOOKING_CONFIRMED,
                payload={"order_number": f"CMD-2025-0000{i + 1}"},
            )
        await db.commit()


async def published_flags(session_factory: async_sessionmaker[AsyncSession]) -> List[bool]:
    async with session_factory() as db:
        stmt = select(OutboxEvent.published).order_by(OutboxEvent.id)
        return list((await db.execute(stmt)).scalars().all())


@pytest.mark.integration
class TestOutboxPublisher:
    """Test suite for OutboxPublisher."""

    @pytest.mark.asyncio
    async def test_batch_publishes_and_marks_events(self, session_factory: Any) -> None:
        await stage_events(session_factory, 3)
        delivered: List[Dict[str, Any]] = []

        async def publish(event_data: Dict[str, Any]) -> None:
            delivered.append(event_data)

        publisher = OutboxPublisher(publisher_func=publish, session_factory=session_factory)

        assert await publisher.get_pending_count() == 3
        assert await publisher.process_batch() == 3
        assert await publisher.get_pending_count() == 0
        assert await published_flags(session_factory) == [True, True, True]
        assert [e["aggregate_id"] for e in delivered] == ["order-0", "order-1", "order-2"]
        assert delivered[0]["event_type"] == "booking.confirmed"
        assert delivered[0]["payload"] == {"order_number": "CMD-2025-00001"}

    @pytest.mark.asyncio
    async def test_empty_outbox(self, session_factory: Any) -> None:
        publisher = OutboxPublisher(session_factory=session_factory)

        assert await publisher.process_batch() == 0

    @pytest.mark.asyncio
    async def test_batch_size_limits_one_pass(self, session_factory: Any) -> None:
        await stage_events(session_factory, 3)
        publisher = OutboxPublisher(session_factory=session_factory, batch_size=2)

        assert await publisher.process_batch() == 2
        assert await publisher.process_batch() == 1

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, session_factory: Any) -> None:
        await stage_events(session_factory, 1)
        calls = []

        async def flaky(event_data: Dict[str, Any]) -> None:
            calls.append(event_data["id"])
            if len(calls) == 1:
                raise ConnectionError("broker unavailable")

        publisher = OutboxPublisher(
            publisher_func=flaky,
            session_factory=session_factory,
            publish_attempts=3,
            retry_multiplier=0,
        )

        assert await publisher.process_batch() == 1
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_persistent_failure_leaves_event_pending(self, session_factory: Any) -> None:
        await stage_events(session_factory, 2)

        async def fail_first(event_data: Dict[str, Any]) -> None:
            if event_data["aggregate_id"] == "order-0":
                raise ConnectionError("broker unavailable")

        publisher = OutboxPublisher(
            publisher_func=fail_first,
            session_factory=session_factory,
            publish_attempts=2,
            retry_multiplier=0,
        )

        assert await publisher.process_batch() == 1
        assert await published_flags(session_factory) == [False, True]
        assert await publisher.get_pending_count() == 1

    @pytest.mark.asyncio
    async def test_worker_publisher_function_accepts_outbox_events(
        self, session_factory: Any
    ) -> None:
        await stage_events(session_factory, 1)
        publisher = OutboxPublisher(
            publisher_func=publish_booking_event, session_factory=session_factory
        )

        assert await publisher.process_batch() == 1


@pytest.mark.integration
class TestOutboxWithSettlement:
    """The outbox event exists if and only if the order does."""

    @pytest.mark.asyncio
    async def test_exhausted_settlement_stages_no_event(
        self,
        settlement_engine: SettlementEngine,
        session_factory: Any,
        seed_event: Any,
        traineeship_metadata: dict,
    ) -> None:
        await seed_event(remaining_places=0)

        await settlement_engine.settle(
            StripeNotification.model_validate(make_checkout_event(metadata=traineeship_metadata))
        )

        assert await published_flags(session_factory) == []

    @pytest.mark.asyncio
    async def test_settled_order_event_is_published(
        self,
        settlement_engine: SettlementEngine,
        session_factory: Any,
        seed_event: Any,
        traineeship_metadata: dict,
    ) -> None:
        await seed_event()
        result = await settlement_engine.settle(
            StripeNotification.model_validate(make_checkout_event(metadata=traineeship_metadata))
        )
        delivered: List[Dict[str, Any]] = []

        async def publish(event_data: Dict[str, Any]) -> None:
            delivered.append(event_data)

        publisher = OutboxPublisher(publisher_func=publish, session_factory=session_factory)

        assert await publisher.process_batch() == 1
        assert delivered[0]["aggregate_type"] == "order"
        assert delivered[0]["payload"]["order_number"] == result.order_number
        assert delivered[0]["payload"]["stripe_session_id"] == "cs_test_001"
