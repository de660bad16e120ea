"""
Pytest configuration and fixtures.

Tests run against a throwaway SQLite database file (aiosqlite), built with
the same engine factory as production, so concurrent settlements serialize
on the database and SAVEPOINTs nest as on PostgreSQL.
"""
import json
import os
from typing import Any, AsyncGenerator, Dict, Optional
from unittest.mock import AsyncMock

# Settings are read once, on first use; set them before importing the package.
os.environ["STRIPE_SECRET_KEY"] = "sk_test_fake_key_for_testing"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_fake_secret"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./booking_settlement_test.db"
os.environ["APP_ENV"] = "test"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ.pop("REDIS_URL", None)

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from booking_settlement.core.compensator import Compensator, Refunded
from booking_settlement.core.idempotency import SettledNotificationCache
from booking_settlement.core.settlement_engine import SettlementEngine
from booking_settlement.database.connection import (
    create_session_factory,
    create_settlement_engine,
    create_tables,
)
from booking_settlement.database.models import EventCapacity, Order
from booking_settlement.integrations.notification_verifier import NotificationVerifier

from factories import WEBHOOK_SECRET


@pytest_asyncio.fixture
async def db_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """Fresh SQLite database per test."""
    engine = create_settlement_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}", poolclass=NullPool
    )
    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def seed_event(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Provision an event capacity row."""

    async def _seed(
        event_id: str = "stage-2025-07-15",
        kind: str = "traineeship",
        remaining_places: int = 10,
        is_active: bool = True,
        title: Optional[str] = "Stage d'été",
        place: Optional[str] = "Studio A",
        date: Optional[str] = "2025-07-15",
        hours: Optional[str] = "10h-17h",
    ) -> None:
        async with session_factory() as db:
            db.add(
                EventCapacity(
                    kind=kind,
                    event_id=event_id,
                    remaining_places=remaining_places,
                    is_active=is_active,
                    title=title,
                    place=place,
                    date=date,
                    hours=hours,
                )
            )
            await db.commit()

    return _seed


@pytest.fixture
def remaining_places(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    async def _remaining(event_id: str = "stage-2025-07-15", kind: str = "traineeship") -> int:
        async with session_factory() as db:
            stmt = select(EventCapacity.remaining_places).where(
                EventCapacity.kind == kind, EventCapacity.event_id == event_id
            )
            return (await db.execute(stmt)).scalar_one()

    return _remaining


@pytest.fixture
def order_count(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    async def _count() -> int:
        async with session_factory() as db:
            return (await db.execute(select(func.count(Order.id)))).scalar_one()

    return _count


@pytest.fixture
def mock_compensator() -> AsyncMock:
    compensator = AsyncMock(spec=Compensator)
    compensator.refund.return_value = Refunded(refund_id="re_test_123", status="succeeded")
    return compensator


@pytest.fixture
def verifier() -> NotificationVerifier:
    return NotificationVerifier(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def settlement_engine(
    session_factory: async_sessionmaker[AsyncSession],
    verifier: NotificationVerifier,
    mock_compensator: AsyncMock,
) -> SettlementEngine:
    """Engine wired to the test database, a mocked refund call and no Redis."""
    return SettlementEngine(
        session_factory=session_factory,
        verifier=verifier,
        compensator=mock_compensator,
        cache=SettledNotificationCache(redis_url=""),
    )


@pytest.fixture
def traineeship_metadata() -> Dict[str, str]:
    """Metadata as the booking page attaches it to a traineeship checkout session."""
    return {
        "type": "traineeship",
        "eventId": "stage-2025-07-15",
        "nombreParticipants": "2",
        "nom": "Marie Curie",
        "email": "Marie.Curie@Example.com",
        "telephone": "0601020304",
        "eventData": json.dumps(
            [
                {
                    "id": "stage-2025-07-15",
                    "title": "Stage d'été",
                    "place": "Studio A",
                    "date": "2025-07-15",
                    "hours": "10h-17h",
                }
            ]
        ),
    }
