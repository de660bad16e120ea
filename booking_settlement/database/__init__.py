"""Database package for the booking settlement service."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import (
    Base,
    EventCapacity,
    Order,
    OutboxEvent,
    SettlementEvent,
)

__all__ = [
    "Base",
    "EventCapacity",
    "Order",
    "OutboxEvent",
    "SettlementEvent",
    "close_db",
    "get_db",
    "get_session_factory",
    "init_db",
]
