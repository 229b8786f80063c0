"""SQLAlchemy database models for the order saga."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER primary keys
SequenceId = BigInteger().with_variant(Integer(), "sqlite")
JsonDocument = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Customer orders table.

    One row per idempotency key. Status only moves along the saga state
    machine and rows are never deleted.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint(
            "status IN ('CREATED', 'INVENTORY_RESERVED', 'PAYMENT_PENDING', "
            "'CONFIRMED', 'FAILED', 'CANCELLED')",
            name="valid_order_status",
        ),
        Index("idx_orders_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, user_id={self.user_id}, "
            f"total={self.total_amount}, status={self.status})>"
        )


class SagaStep(Base):
    """
    Saga step audit trail table.

    One row per attempt, including retries and compensations.
    Immutable once written.
    """

    __tablename__ = "saga_steps"

    id: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    step_name: Mapped[str] = mapped_column(String(64), nullable=False)
    step_status: Mapped[str] = mapped_column(String(32), nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    compensation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "step_status IN ('SUCCESS', 'RETRY_FAILED', 'FAILED')",
            name="valid_step_status",
        ),
        Index("idx_saga_steps_order_created", "order_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of SagaStep."""
        return (
            f"<SagaStep(id={self.id}, order_id={self.order_id}, "
            f"step={self.step_name}, status={self.step_status})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Events are written in the same transaction as the order status change
    they describe, then published best effort. Rows left PENDING are picked
    up by the dispatcher worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False, default="ORDER")
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JsonDocument, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('PENDING', 'PUBLISHED')", name="valid_outbox_status"),
        Index("idx_outbox_status_created", "status", "created_at"),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"status={self.status})>"
        )


class PaymentTransaction(Base):
    """
    Payment ledger table owned by the payment service.

    Every PAY and REFUND is a separate row keyed by a globally unique
    idempotency key.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    operation_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    provider_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("operation_type IN ('PAY', 'REFUND')", name="valid_operation_type"),
        CheckConstraint(
            "status IN ('PAID', 'FAILED', 'REFUNDED')",
            name="valid_payment_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_payment_tx_order_op_status", "order_id", "operation_type", "status"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentTransaction."""
        return (
            f"<PaymentTransaction(id={self.id}, order_id={self.order_id}, "
            f"op={self.operation_type}, status={self.status})>"
        )
