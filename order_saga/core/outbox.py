"""
Transactional outbox for order events.

Events are written in the same transaction as the order status change they
describe. After that transaction commits, a best-effort publish to the
pub/sub channel is attempted; failures are logged and the row stays PENDING
for the dispatcher worker.
"""
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import redis.asyncio as aioredis
import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from order_saga.database.models import Order, OutboxEvent
from order_saga.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

AGGREGATE_TYPE = "ORDER"
MAX_PENDING_LIMIT = 100


class OrderEventType(str, Enum):
    ORDER_CONFIRMED = "ORDER_CONFIRMED"
    ORDER_FAILED = "ORDER_FAILED"
    ORDER_CANCELLED = "ORDER_CANCELLED"


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    PUBLISHED = "PUBLISHED"


class EventPublisher(Protocol):
    """Anything that can push a serialized event onto a channel."""

    async def publish(self, channel: str, message: str) -> None: ...


class RedisEventPublisher:
    """Publishes events with Redis pub/sub."""

    def __init__(self, redis_client: aioredis.Redis):
        self.redis_client = redis_client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisEventPublisher":
        return cls(aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True))

    async def publish(self, channel: str, message: str) -> None:
        await self.redis_client.publish(channel, message)

    async def close(self) -> None:
        await self.redis_client.aclose()


def _json_number(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def build_order_event_payload(
    event_type: OrderEventType,
    order: Order,
    actor_user_id: Optional[uuid.UUID],
    correlation_id: Optional[str],
) -> Dict[str, Any]:
    """
    Snapshot of an order for the event stream.

    Returns:
        Dict[str, Any]: JSON-serializable payload
    """
    return {
        "eventType": OrderEventType(event_type).value,
        "occurredAt": datetime.now(timezone.utc).isoformat(),
        "actorUserId": str(actor_user_id) if actor_user_id else None,
        "orderId": str(order.id),
        "userId": str(order.user_id),
        "productId": str(order.product_id),
        "quantity": order.quantity,
        "unitPrice": _json_number(order.unit_price),
        "totalAmount": _json_number(order.total_amount),
        "status": order.status,
        "failureReason": order.failure_reason,
        "correlationId": correlation_id,
    }


def clamp_pending_limit(limit: Optional[int], default: int = 20) -> int:
    """Clamp an operator-supplied page size into [1, 100]."""
    if limit is None:
        limit = default
    return min(max(limit, 1), MAX_PENDING_LIMIT)


class OutboxStore:
    """
    Stages, publishes and reads outbox events.

    ``stage`` only adds the row to the caller's unit of work. ``publish`` must
    be called after that unit of work commits and never raises.
    """

    def __init__(
        self,
        publisher: Optional[EventPublisher] = None,
        channel: str = "orders.events",
    ):
        """
        Initialize outbox store.

        Args:
            publisher: Pub/sub publisher; None disables immediate publication
            channel: Channel order events are published to
        """
        self.publisher = publisher
        self.channel = channel

    def stage(
        self,
        db: AsyncSession,
        event_type: OrderEventType,
        order: Order,
        actor_user_id: Optional[uuid.UUID],
        correlation_id: Optional[str],
    ) -> OutboxEvent:
        """Add an event for ``order`` to the current transaction."""
        event = OutboxEvent(
            aggregate_type=AGGREGATE_TYPE,
            aggregate_id=order.id,
            event_type=OrderEventType(event_type).value,
            payload=build_order_event_payload(event_type, order, actor_user_id, correlation_id),
            status=OutboxStatus.PENDING.value,
        )
        db.add(event)
        return event

    async def publish(self, db: AsyncSession, event: OutboxEvent) -> bool:
        """
        Best-effort immediate publication of a committed event.

        Args:
            db: Database session used to flip the row to PUBLISHED
            event: Committed outbox event

        Returns:
            bool: True if the event reached the channel and was marked published
        """
        if self.publisher is None:
            logger.debug("order_event_publish_skipped", event_id=event.id)
            return False

        if not await self.send(event):
            return False

        try:
            await self.mark_published(db, [event.id])
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(
                "outbox_mark_published_failed",
                event_id=event.id,
                error=str(e),
            )
            return False
        return True

    async def send(self, event: OutboxEvent) -> bool:
        """
        Push one event onto the channel.

        Returns:
            bool: True if published successfully, False otherwise
        """
        if self.publisher is None:
            return False
        try:
            await self.publisher.publish(self.channel, json.dumps(event.payload))
        except Exception as e:
            metrics.record_outbox_publish_failure(event.event_type)
            logger.warning(
                "order_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                aggregate_id=str(event.aggregate_id),
                correlation_id=(event.payload or {}).get("correlationId"),
                error=str(e),
            )
            return False

        metrics.record_outbox_event_published(event.event_type)
        logger.info(
            "order_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=str(event.aggregate_id),
        )
        return True

    async def fetch_pending(self, db: AsyncSession, limit: int) -> List[OutboxEvent]:
        """Oldest PENDING events first."""
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.status == OutboxStatus.PENDING.value)
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def mark_published(self, db: AsyncSession, event_ids: List[int]) -> None:
        """Flip events to PUBLISHED. Does not commit."""
        if not event_ids:
            return

        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(status=OutboxStatus.PUBLISHED.value, published_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session="fetch")
        )
        await db.execute(stmt)

    async def pending_count(self, db: AsyncSession) -> int:
        stmt = select(func.count()).select_from(OutboxEvent).where(
            OutboxEvent.status == OutboxStatus.PENDING.value
        )
        result = await db.execute(stmt)
        return int(result.scalar_one())
