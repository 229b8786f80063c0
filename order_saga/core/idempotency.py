"""
Idempotency ledger for order creation and payment operations.

The unique constraint on ``idempotency_key`` is the source of truth. This
module adds:
1. Key normalization and validation (trimmed, 1-128 characters)
2. An optional Redis cache of key -> record id in front of the database
3. A per-key asyncio lock so same-process requests for one key serialize
4. Duplicate-insert resolution: the loser of a race re-reads the winner
"""
import asyncio
import uuid
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Tuple, Type, TypeVar

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from order_saga.core.exceptions import IdempotencyKeyError
from order_saga.database.models import Order, PaymentTransaction
from order_saga.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_KEY_LENGTH = 128

Record = TypeVar("Record", Order, PaymentTransaction)


class IdempotencyScope(str, Enum):
    """Operation families that own an idempotency key space."""

    ORDER_CREATE = "order_create"
    PAYMENT_PAY = "payment_pay"
    PAYMENT_REFUND = "payment_refund"


_SCOPE_MODELS: Dict[IdempotencyScope, Type[Any]] = {
    IdempotencyScope.ORDER_CREATE: Order,
    IdempotencyScope.PAYMENT_PAY: PaymentTransaction,
    IdempotencyScope.PAYMENT_REFUND: PaymentTransaction,
}


def normalize_idempotency_key(*candidates: Optional[str]) -> str:
    """
    Pick the first non-blank candidate and validate it.

    Args:
        *candidates: Key sources in priority order (e.g. header, then body)

    Returns:
        str: Trimmed key

    Raises:
        IdempotencyKeyError: If every candidate is blank or the key is too long
    """
    key = next((c for c in candidates if c is not None and c.strip()), None)
    if key is None:
        raise IdempotencyKeyError(
            "Idempotency-Key header is required", code="MISSING_IDEMPOTENCY_KEY"
        )
    key = key.strip()
    if len(key) > MAX_KEY_LENGTH:
        raise IdempotencyKeyError(
            f"Idempotency-Key is too long (max {MAX_KEY_LENGTH})",
            code="INVALID_IDEMPOTENCY_KEY",
        )
    return key


def derive_idempotency_key(base_key: str, dependency: str, operation: str) -> str:
    """Per-call key sent downstream, e.g. ``abc:inventory:reserve``."""
    return f"{base_key}:{dependency}:{operation}"


class IdempotencyLedger:
    """
    Looks up and claims idempotency keys.

    Implements a two-tier lookup:
    - Redis for fast key -> id lookups (optional, best effort)
    - The database unique constraint for correctness
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        cache_ttl_seconds: int = 86400,
    ):
        """
        Initialize idempotency ledger.

        Args:
            redis_client: Optional Redis client; without it only the database is used
            cache_ttl_seconds: Lifetime of cached key -> id entries
        """
        self.redis_client = redis_client
        self.cache_ttl_seconds = cache_ttl_seconds
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, str], int] = {}

    @staticmethod
    def _cache_key(scope: IdempotencyScope, key: str) -> str:
        return f"idempotency:{scope.value}:{key}"

    @asynccontextmanager
    async def guard(self, scope: IdempotencyScope, key: str) -> AsyncIterator[None]:
        """
        Critical section for one idempotency key within this process.

        Usage:
            async with ledger.guard(IdempotencyScope.ORDER_CREATE, key):
                existing = await ledger.lookup(db, scope, key)
                ...
        """
        slot = (scope.value, key)
        lock = self._locks.setdefault(slot, asyncio.Lock())
        self._lock_users[slot] = self._lock_users.get(slot, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[slot] -= 1
            if self._lock_users[slot] == 0:
                del self._lock_users[slot]
                del self._locks[slot]

    async def _cache_get(self, scope: IdempotencyScope, key: str) -> Optional[uuid.UUID]:
        if self.redis_client is None:
            return None
        try:
            cached = await self.redis_client.get(self._cache_key(scope, key))
        except Exception as e:
            logger.warning("idempotency_cache_error", error=str(e), idempotency_key=key)
            return None
        if not cached:
            return None
        if isinstance(cached, bytes):
            cached = cached.decode("utf-8")
        try:
            return uuid.UUID(cached)
        except ValueError:
            return None

    async def _cache_set(self, scope: IdempotencyScope, key: str, record_id: uuid.UUID) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(
                self._cache_key(scope, key), self.cache_ttl_seconds, str(record_id)
            )
        except Exception as e:
            logger.warning("idempotency_cache_store_failed", error=str(e), idempotency_key=key)

    async def lookup(self, db: AsyncSession, scope: IdempotencyScope, key: str) -> Optional[Any]:
        """
        Find the record that already owns ``key``.

        Args:
            db: Database session
            scope: Operation family
            key: Normalized idempotency key

        Returns:
            The stored Order / PaymentTransaction, or None
        """
        model = _SCOPE_MODELS[scope]

        cached_id = await self._cache_get(scope, key)
        if cached_id is not None:
            record = await db.get(model, cached_id)
            if record is not None and record.idempotency_key == key:
                metrics.record_idempotency_lookup(scope.value, "redis")
                return record

        result = await db.execute(select(model).where(model.idempotency_key == key))
        record = result.scalar_one_or_none()
        if record is None:
            metrics.record_idempotency_lookup(scope.value, "miss")
            return None

        metrics.record_idempotency_lookup(scope.value, "database")
        await self._cache_set(scope, key, record.id)
        return record

    async def claim(
        self, db: AsyncSession, scope: IdempotencyScope, record: Record
    ) -> Tuple[Record, bool]:
        """
        Insert a new keyed record, or return the one that beat us to it.

        The insert runs in a savepoint so a duplicate-key violation only
        discards this record and leaves the surrounding transaction usable.

        Args:
            db: Database session
            scope: Operation family
            record: Unsaved Order / PaymentTransaction carrying the key

        Returns:
            Tuple of (stored record, replayed flag)
        """
        try:
            async with db.begin_nested():
                db.add(record)
                await db.flush()
        except IntegrityError:
            key = record.idempotency_key
            model = _SCOPE_MODELS[scope]
            result = await db.execute(select(model).where(model.idempotency_key == key))
            winner = result.scalar_one_or_none()
            if winner is None:
                # Violation came from another constraint
                raise
            metrics.record_idempotency_race(scope.value)
            logger.info(
                "idempotency_race_resolved",
                scope=scope.value,
                idempotency_key=key,
                record_id=str(winner.id),
            )
            return winner, True

        await self._cache_set(scope, record.idempotency_key, record.id)
        return record, False

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
