"""Persistence: ORM models plus engine and session handling."""
from .connection import (
    build_engine,
    build_session_factory,
    close_db,
    create_tables,
    get_db,
    get_session_factory,
    init_db,
)
from .models import Base, Order, OutboxEvent, PaymentTransaction, SagaStep

__all__ = [
    "Base",
    "Order",
    "SagaStep",
    "OutboxEvent",
    "PaymentTransaction",
    "build_engine",
    "build_session_factory",
    "create_tables",
    "get_db",
    "get_session_factory",
    "init_db",
    "close_db",
]
