"""
FastAPI dependencies: caller identity, correlation id and service singletons.

The orchestrator and the payment ledger hold long-lived collaborators (HTTP
clients, circuit breakers, Redis connections), so one instance of each is
built lazily per process and closed on shutdown. Tests replace them with
``app.dependency_overrides``.
"""
import uuid
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
from fastapi import Header, Request

from order_saga.config import get_settings
from order_saga.core.correlation import CORRELATION_ID_HEADER, normalize_correlation_id
from order_saga.core.exceptions import AuthenticationError
from order_saga.core.idempotency import IdempotencyLedger
from order_saga.core.order_saga import OrderSagaOrchestrator
from order_saga.core.outbox import OutboxStore, RedisEventPublisher
from order_saga.core.payment_ledger import PaymentLedgerService

_orchestrator: Optional[OrderSagaOrchestrator] = None
_payment_ledger: Optional[PaymentLedgerService] = None


@dataclass(frozen=True)
class Caller:
    """Authenticated identity forwarded by the gateway."""

    user_id: uuid.UUID
    role: str


async def get_caller(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
) -> Caller:
    """
    Read the gateway identity headers.

    Raises:
        AuthenticationError: If a header is missing or the user id is not a UUID
    """
    if x_user_id is None or not x_user_id.strip():
        raise AuthenticationError("Missing X-User-Id header")
    if x_user_role is None or not x_user_role.strip():
        raise AuthenticationError("Missing X-User-Role header")
    try:
        user_id = uuid.UUID(x_user_id.strip())
    except ValueError:
        raise AuthenticationError("X-User-Id must be a UUID") from None
    return Caller(user_id=user_id, role=x_user_role.strip())


def get_correlation_id(request: Request) -> str:
    """Correlation id bound by the middleware, or the raw header."""
    cid = getattr(request.state, "correlation_id", None)
    return cid or normalize_correlation_id(request.headers.get(CORRELATION_ID_HEADER))


def _redis_client() -> Optional[aioredis.Redis]:
    settings = get_settings()
    if not settings.redis_url:
        return None
    return aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)


def get_order_orchestrator() -> OrderSagaOrchestrator:
    """Process-wide orchestrator built from settings."""
    global _orchestrator
    if _orchestrator is None:
        settings = get_settings()
        publisher = RedisEventPublisher.from_url(settings.redis_url) if settings.redis_url else None
        _orchestrator = OrderSagaOrchestrator(
            settings=settings,
            idempotency_ledger=IdempotencyLedger(_redis_client(), settings.idempotency_cache_ttl),
            outbox=OutboxStore(publisher=publisher, channel=settings.event_channel),
        )
    return _orchestrator


def get_payment_ledger() -> PaymentLedgerService:
    """Process-wide payment ledger built from settings."""
    global _payment_ledger
    if _payment_ledger is None:
        settings = get_settings()
        _payment_ledger = PaymentLedgerService(
            settings=settings,
            idempotency_ledger=IdempotencyLedger(_redis_client(), settings.idempotency_cache_ttl),
        )
    return _payment_ledger


async def close_services() -> None:
    """Close whichever singletons were created."""
    global _orchestrator, _payment_ledger
    if _orchestrator is not None:
        await _orchestrator.close()
        if isinstance(_orchestrator.outbox.publisher, RedisEventPublisher):
            await _orchestrator.outbox.publisher.close()
        _orchestrator = None
    if _payment_ledger is not None:
        await _payment_ledger.close()
        _payment_ledger = None
