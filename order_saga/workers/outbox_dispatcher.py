"""
Outbox dispatcher background worker.

Re-publishes order events whose immediate publication failed (or was
skipped) and leaves them PENDING otherwise. Delivery is at-least-once:
consumers must tolerate duplicates.
"""
import asyncio
import signal
import time
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_saga.config import get_settings
from order_saga.core.outbox import OutboxStore, RedisEventPublisher
from order_saga.database.connection import close_db, get_session_factory
from order_saga.monitoring.logging import setup_logging
from order_saga.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OutboxDispatcher:
    """
    Publishes PENDING outbox events, oldest first.

    1. Read a batch of PENDING events
    2. Publish each one to the event channel
    3. Mark the published ones PUBLISHED in one commit
    """

    def __init__(
        self,
        store: OutboxStore,
        session_factory: Optional[Callable[[], Any]] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        """
        Initialize outbox dispatcher.

        Args:
            store: Outbox store carrying the publisher and channel
            session_factory: Session factory (defaults to the application's)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
        """
        self.store = store
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = session_factory
        self.batch_size = max(1, batch_size)
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

        logger.info(
            "outbox_dispatcher_initialized",
            batch_size=self.batch_size,
            poll_interval=poll_interval_seconds,
            channel=store.channel,
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def process_batch(self) -> int:
        """
        Process a batch of pending events.

        Returns:
            int: Number of events published
        """
        start = time.time()
        async with self.session_factory() as db:
            try:
                events = await self.store.fetch_pending(db, self.batch_size)
                if not events:
                    metrics.set_outbox_queue_depth(0)
                    return 0

                logger.info("outbox_batch_processing_started", batch_size=len(events))

                published_ids = []
                for event in events:
                    if await self.store.send(event):
                        published_ids.append(event.id)

                if published_ids:
                    await self.store.mark_published(db, published_ids)
                    await db.commit()

                metrics.set_outbox_queue_depth(await self.store.pending_count(db))
                metrics.record_outbox_batch(time.time() - start)
                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    published=len(published_ids),
                    failed=len(events) - len(published_ids),
                )
                return len(published_ids)

            except Exception as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def start(self) -> None:
        """
        Poll for pending events until stopped.
        """
        self._running = True
        logger.info("outbox_dispatcher_started")

        try:
            while self._running:
                published_count = await self.process_batch()
                if published_count < self.batch_size:
                    await asyncio.sleep(self.poll_interval_seconds)
                else:
                    # Full batch, more are probably waiting
                    await asyncio.sleep(0)
        finally:
            logger.info("outbox_dispatcher_stopped")

    def stop(self) -> None:
        """Stop the dispatcher after the current batch."""
        self._running = False
        logger.info("outbox_dispatcher_stop_requested")


async def run_outbox_dispatcher() -> None:
    """
    Start the outbox dispatcher worker.

    Runs continuously until SIGINT/SIGTERM.
    """
    setup_logging("outbox-dispatcher")
    settings = get_settings()

    if not settings.redis_url:
        logger.error("outbox_dispatcher_not_configured", reason="redis_url is not set")
        return

    publisher = RedisEventPublisher.from_url(settings.redis_url)
    dispatcher = OutboxDispatcher(
        OutboxStore(publisher=publisher, channel=settings.event_channel),
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_dispatcher_shutdown_signal_received", signal=sig)
        dispatcher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await dispatcher.start()
    except Exception as e:
        logger.error("outbox_dispatcher_worker_error", error=str(e))
        raise
    finally:
        await publisher.close()
        await close_db()


def start_outbox_dispatcher() -> None:
    asyncio.run(run_outbox_dispatcher())


if __name__ == "__main__":
    start_outbox_dispatcher()
