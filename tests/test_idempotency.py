"""
Idempotency ledger tests.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_saga.core.exceptions import IdempotencyKeyError
from order_saga.core.idempotency import (
    IdempotencyLedger,
    IdempotencyScope,
    derive_idempotency_key,
    normalize_idempotency_key,
)
from order_saga.database.models import Order


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the cache paths."""

    def __init__(self, broken: bool = False) -> None:
        self.store: Dict[str, str] = {}
        self.broken = broken
        self.closed = False

    async def get(self, key: str) -> Optional[str]:
        if self.broken:
            raise ConnectionError("redis down")
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        if self.broken:
            raise ConnectionError("redis down")
        self.store[key] = value

    async def aclose(self) -> None:
        self.closed = True


def make_order(key: str, user_id: uuid.UUID, product_id: uuid.UUID) -> Order:
    return Order(
        id=uuid.uuid4(),
        user_id=user_id,
        product_id=product_id,
        quantity=2,
        unit_price=Decimal("10.00"),
        total_amount=Decimal("20.00"),
        status="CREATED",
        idempotency_key=key,
    )


class TestKeyNormalization:
    @pytest.mark.unit
    def test_trims_and_prefers_first_non_blank(self) -> None:
        assert normalize_idempotency_key("  ", None, " abc ") == "abc"
        assert normalize_idempotency_key("header", "body") == "header"

    @pytest.mark.unit
    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_missing_key(self, value: Optional[str]) -> None:
        with pytest.raises(IdempotencyKeyError) as exc_info:
            normalize_idempotency_key(value)
        assert exc_info.value.code == "MISSING_IDEMPOTENCY_KEY"
        assert exc_info.value.status_code == 400

    @pytest.mark.unit
    def test_key_length_limit(self) -> None:
        assert normalize_idempotency_key("k" * 128) == "k" * 128
        with pytest.raises(IdempotencyKeyError) as exc_info:
            normalize_idempotency_key("k" * 129)
        assert exc_info.value.code == "INVALID_IDEMPOTENCY_KEY"

    @pytest.mark.unit
    def test_derived_keys(self) -> None:
        assert derive_idempotency_key("abc", "inventory", "reserve") == "abc:inventory:reserve"
        assert derive_idempotency_key("abc", "payment", "refund") == "abc:payment:refund"


class TestIdempotencyLedger:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lookup_miss_then_claim_then_hit(
        self, test_db: AsyncSession, user_id: uuid.UUID, product_id: uuid.UUID
    ) -> None:
        ledger = IdempotencyLedger()
        scope = IdempotencyScope.ORDER_CREATE

        assert await ledger.lookup(test_db, scope, "key-1") is None

        stored, replayed = await ledger.claim(test_db, scope, make_order("key-1", user_id, product_id))
        await test_db.commit()
        assert replayed is False

        found = await ledger.lookup(test_db, scope, "key-1")
        assert found is not None
        assert found.id == stored.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_claim_returns_winner(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        user_id: uuid.UUID,
        product_id: uuid.UUID,
    ) -> None:
        ledger = IdempotencyLedger()
        scope = IdempotencyScope.ORDER_CREATE

        async with session_factory() as first:
            winner, replayed = await ledger.claim(first, scope, make_order("dup", user_id, product_id))
            await first.commit()
        assert replayed is False

        async with session_factory() as second:
            loser, replayed = await ledger.claim(second, scope, make_order("dup", user_id, product_id))
            assert replayed is True
            assert loser.id == winner.id

            # The session is still usable after the savepoint rollback
            count = await second.execute(select(func.count()).select_from(Order))
            assert count.scalar_one() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cache_hit_skips_database_query(
        self, test_db: AsyncSession, user_id: uuid.UUID, product_id: uuid.UUID
    ) -> None:
        redis_client: Any = FakeRedis()
        ledger = IdempotencyLedger(redis_client=redis_client, cache_ttl_seconds=60)
        scope = IdempotencyScope.ORDER_CREATE

        stored, _ = await ledger.claim(test_db, scope, make_order("cached", user_id, product_id))
        await test_db.commit()

        assert redis_client.store["idempotency:order_create:cached"] == str(stored.id)
        found = await ledger.lookup(test_db, scope, "cached")
        assert found is not None and found.id == stored.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cache_errors_fall_back_to_database(
        self, test_db: AsyncSession, user_id: uuid.UUID, product_id: uuid.UUID
    ) -> None:
        redis_client: Any = FakeRedis(broken=True)
        ledger = IdempotencyLedger(redis_client=redis_client)
        scope = IdempotencyScope.ORDER_CREATE

        stored, _ = await ledger.claim(test_db, scope, make_order("k", user_id, product_id))
        await test_db.commit()

        found = await ledger.lookup(test_db, scope, "k")
        assert found is not None and found.id == stored.id

        await ledger.close()
        assert redis_client.closed is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_guard_releases_lock_bookkeeping(self) -> None:
        ledger = IdempotencyLedger()
        async with ledger.guard(IdempotencyScope.PAYMENT_PAY, "k"):
            assert ("payment_pay", "k") in ledger._locks
        assert ledger._locks == {}
        assert ledger._lock_users == {}
