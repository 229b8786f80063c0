"""
Order event subscriber.

Listens on the order event channel and logs every event it consumes. Serves
as the reference downstream consumer of the outbox stream.
"""
import asyncio
import json
import signal
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog

from order_saga.config import get_settings
from order_saga.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def handle_message(data: Any) -> Optional[Dict[str, Any]]:
    """
    Decode and log one published event.

    Returns:
        Optional[Dict[str, Any]]: The decoded payload, or None if unreadable
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    try:
        payload = json.loads(data)
    except (TypeError, ValueError):
        logger.warning("order_event_unreadable", raw=str(data)[:200])
        return None
    if not isinstance(payload, dict):
        logger.warning("order_event_unreadable", raw=str(data)[:200])
        return None

    logger.info(
        "order_event_consumed",
        event_type=payload.get("eventType"),
        order_id=payload.get("orderId"),
        status=payload.get("status"),
        correlation_id=payload.get("correlationId"),
    )
    return payload


class OrderEventSubscriber:
    """Redis pub/sub consumer for order events."""

    def __init__(self, redis_client: aioredis.Redis, channel: str = "orders.events"):
        self.redis_client = redis_client
        self.channel = channel
        self._running = False

    async def start(self) -> None:
        self._running = True
        pubsub = self.redis_client.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info("order_event_subscriber_started", channel=self.channel)

        try:
            while self._running:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is not None:
                    handle_message(message.get("data"))
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
            logger.info("order_event_subscriber_stopped")

    def stop(self) -> None:
        self._running = False


async def run_event_subscriber() -> None:
    setup_logging("event-subscriber")
    settings = get_settings()

    if not settings.redis_url:
        logger.error("order_event_subscriber_not_configured", reason="redis_url is not set")
        return

    redis_client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    subscriber = OrderEventSubscriber(redis_client, settings.event_channel)

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("order_event_subscriber_shutdown_signal_received", signal=sig)
        subscriber.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await subscriber.start()
    finally:
        await redis_client.aclose()


def start_event_subscriber() -> None:
    asyncio.run(run_event_subscriber())


if __name__ == "__main__":
    start_event_subscriber()
