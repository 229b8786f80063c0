"""
Outbox dispatcher and event subscriber tests.
"""
import json
import uuid
from decimal import Decimal
from typing import List

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_saga.core.outbox import OrderEventType, OutboxStore
from order_saga.database.models import Order, OutboxEvent
from order_saga.workers.event_subscriber import handle_message
from order_saga.workers.outbox_dispatcher import OutboxDispatcher
from tests.conftest import RecordingPublisher


class SelectivePublisher(RecordingPublisher):
    """Fails only for the given event types."""

    def __init__(self, failing_types: List[str]):
        super().__init__()
        self.failing_types = failing_types

    async def publish(self, channel: str, message: str) -> None:
        if json.loads(message)["eventType"] in self.failing_types:
            raise ConnectionError("redis unavailable")
        await super().publish(channel, message)


async def stage_events(
    session_factory: async_sessionmaker[AsyncSession], event_types: List[OrderEventType]
) -> None:
    store = OutboxStore()
    async with session_factory() as db:
        for event_type in event_types:
            order = Order(
                id=uuid.uuid4(),
                user_id=uuid.uuid4(),
                product_id=uuid.uuid4(),
                quantity=1,
                unit_price=Decimal("10.00"),
                total_amount=Decimal("10.00"),
                status="CONFIRMED",
                idempotency_key=str(uuid.uuid4()),
            )
            db.add(order)
            store.stage(db, event_type, order, None, "c-1")
            await db.commit()


async def statuses(session_factory: async_sessionmaker[AsyncSession]) -> List[str]:
    async with session_factory() as db:
        result = await db.execute(select(OutboxEvent).order_by(OutboxEvent.id))
        return [e.status for e in result.scalars().all()]


class TestOutboxDispatcher:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publishes_pending_events(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await stage_events(
            session_factory, [OrderEventType.ORDER_CONFIRMED, OrderEventType.ORDER_CANCELLED]
        )
        publisher = RecordingPublisher()
        dispatcher = OutboxDispatcher(
            OutboxStore(publisher=publisher, channel="orders.events"),
            session_factory=session_factory,
        )

        assert await dispatcher.process_batch() == 2

        assert [m["payload"]["eventType"] for m in publisher.messages] == [
            "ORDER_CONFIRMED",
            "ORDER_CANCELLED",
        ]
        assert await statuses(session_factory) == ["PUBLISHED", "PUBLISHED"]
        assert await dispatcher.process_batch() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_events_stay_pending(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await stage_events(
            session_factory, [OrderEventType.ORDER_FAILED, OrderEventType.ORDER_CONFIRMED]
        )
        dispatcher = OutboxDispatcher(
            OutboxStore(publisher=SelectivePublisher(["ORDER_FAILED"])),
            session_factory=session_factory,
        )

        assert await dispatcher.process_batch() == 1
        assert await statuses(session_factory) == ["PENDING", "PUBLISHED"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_size_bounds_each_pass(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await stage_events(session_factory, [OrderEventType.ORDER_CONFIRMED] * 3)
        dispatcher = OutboxDispatcher(
            OutboxStore(publisher=RecordingPublisher()),
            session_factory=session_factory,
            batch_size=2,
        )

        assert await dispatcher.process_batch() == 2
        assert await dispatcher.process_batch() == 1
        assert await statuses(session_factory) == ["PUBLISHED"] * 3

    @pytest.mark.unit
    def test_stop_clears_running_flag(self) -> None:
        dispatcher = OutboxDispatcher(OutboxStore(), session_factory=None)
        dispatcher._running = True
        dispatcher.stop()
        assert dispatcher._running is False


class TestEventSubscriber:
    @pytest.mark.unit
    def test_decodes_published_payload(self) -> None:
        payload = {"eventType": "ORDER_CONFIRMED", "orderId": "o-1", "status": "CONFIRMED"}
        assert handle_message(json.dumps(payload).encode("utf-8")) == payload

    @pytest.mark.unit
    def test_unreadable_messages_are_skipped(self) -> None:
        assert handle_message(b"not json") is None
        assert handle_message("[1, 2]") is None
