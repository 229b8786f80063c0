"""
Pytest configuration and fixtures.

Database tests run against a throwaway SQLite file per test. Downstream
services are simulated in-process with ``httpx.MockTransport``.
"""
import json
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_saga.config import Settings
from order_saga.core.chaos import ChaosConfig, ChaosInjector
from order_saga.core.circuit_breaker import CircuitBreaker
from order_saga.core.idempotency import IdempotencyLedger
from order_saga.core.order_saga import OrderSagaOrchestrator
from order_saga.core.outbox import OutboxStore
from order_saga.database.connection import build_engine, build_session_factory, create_tables
from order_saga.database.models import Order
from order_saga.integrations.downstream import InventoryClient, PaymentClient, ProductClient


async def no_sleep(seconds: float) -> None:
    """Backoff replacement that records nothing and waits for nothing."""
    return None


def make_order(status: str = "CONFIRMED") -> Order:
    """Unsaved priced order: 2 x 10.00."""
    return Order(
        id=uuid.uuid4(),
        user_id=uuid.uuid4(),
        product_id=uuid.uuid4(),
        quantity=2,
        unit_price=Decimal("10.00"),
        total_amount=Decimal("20.00"),
        status=status,
        idempotency_key=str(uuid.uuid4()),
    )


class RecordingPublisher:
    """EventPublisher that keeps what it was given, or fails on demand."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: List[Dict[str, Any]] = []

    async def publish(self, channel: str, message: str) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.messages.append({"channel": channel, "payload": json.loads(message)})


@dataclass
class FakeDownstream:
    """
    In-memory product, inventory and payment services.

    Each ``*_failures`` list is consumed one entry per call; an entry is an
    HTTP status to answer with, or ``"timeout"`` to raise a transport error.
    """

    price: Optional[Any] = "10.00"
    product_status: int = 200
    reserve_failures: List[Any] = field(default_factory=list)
    release_failures: List[Any] = field(default_factory=list)
    pay_failures: List[Any] = field(default_factory=list)
    refund_failures: List[Any] = field(default_factory=list)
    pay_status: str = "PAID"
    requests: List[httpx.Request] = field(default_factory=list)
    paid: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @staticmethod
    def _failure(failures: List[Any], request: httpx.Request) -> Optional[httpx.Response]:
        if not failures:
            return None
        failure = failures.pop(0)
        if failure == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(failure, json={"error": {"message": f"downstream said {failure}"}})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.startswith("/products/"):
            if self.product_status != 200:
                return httpx.Response(self.product_status, json={"message": "no such product"})
            return httpx.Response(
                200, json={"id": path.rsplit("/", 1)[-1], "name": "Widget", "price": self.price}
            )

        body = json.loads(request.content or b"{}")
        if path == "/inventory/reserve":
            return self._failure(self.reserve_failures, request) or httpx.Response(
                200, json={"status": "RESERVED"}
            )
        if path == "/inventory/release":
            return self._failure(self.release_failures, request) or httpx.Response(
                200, json={"status": "RELEASED"}
            )
        if path == "/payments/pay":
            failed = self._failure(self.pay_failures, request)
            if failed is not None:
                return failed
            key = request.headers["Idempotency-Key"]
            self.paid.setdefault(
                key,
                {
                    "paymentId": str(uuid.uuid4()),
                    "orderId": body["orderId"],
                    "status": self.pay_status,
                    "providerRef": "pay-test",
                    "idempotentReplay": False,
                },
            )
            return httpx.Response(200, json=self.paid[key])
        if path == "/payments/refund":
            return self._failure(self.refund_failures, request) or httpx.Response(
                200,
                json={
                    "paymentId": str(uuid.uuid4()),
                    "orderId": body["orderId"],
                    "status": "REFUNDED",
                    "providerRef": "refund-test",
                    "idempotentReplay": False,
                },
            )
        return httpx.Response(404, json={"message": "unknown path"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        app_name="order-saga-test",
        app_env="test",
        log_level="DEBUG",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        redis_url=None,
        product_service_url="http://product.test",
        inventory_service_url="http://inventory.test",
        payment_service_url="http://payment.test",
        saga_max_attempts=3,
        saga_initial_backoff_seconds=0.0,
        circuit_breaker_failure_threshold=10,
        payment_delay_ms=0,
        payment_failure_probability=0.0,
        chaos_mode=False,
    )


@pytest_asyncio.fixture
async def session_factory(test_settings: Settings) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Session factory bound to a fresh SQLite schema."""
    engine = build_engine(test_settings)
    await create_tables(engine)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def downstream() -> FakeDownstream:
    return FakeDownstream()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest_asyncio.fixture
async def orchestrator(
    test_settings: Settings, downstream: FakeDownstream, publisher: RecordingPublisher
) -> AsyncGenerator[OrderSagaOrchestrator, Any]:
    """Orchestrator wired to the in-memory downstream services."""
    transport = downstream.transport()
    saga = OrderSagaOrchestrator(
        settings=test_settings,
        product_client=ProductClient(test_settings.product_service_url, transport=transport),
        inventory_client=InventoryClient(test_settings.inventory_service_url, transport=transport),
        payment_client=PaymentClient(test_settings.payment_service_url, transport=transport),
        inventory_breaker=CircuitBreaker("inventory-service", failure_threshold=10),
        payment_breaker=CircuitBreaker("payment-service", failure_threshold=10),
        idempotency_ledger=IdempotencyLedger(),
        outbox=OutboxStore(publisher=publisher, channel=test_settings.event_channel),
        chaos=ChaosInjector(ChaosConfig(enabled=False)),
        sleep=no_sleep,
    )
    yield saga
    await saga.close()


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.UUID("123e4567-e89b-12d3-a456-426614174000")


@pytest.fixture
def product_id() -> uuid.UUID:
    return uuid.UUID("9b2f3c5e-6a1d-4a4e-9c53-2f1f7a0b8d11")


@pytest.fixture
def sample_amount() -> Decimal:
    return Decimal("20.00")
