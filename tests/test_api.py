"""
API tests for the order and payment apps.

Drives the ASGI apps in-process with dependency overrides for the database
session and the service singletons.
"""
import uuid
from typing import Any, AsyncGenerator, Dict

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_saga.api.dependencies import get_order_orchestrator, get_payment_ledger
from order_saga.api.main import app
from order_saga.api.payments_main import app as payments_app
from order_saga.config import Settings
from order_saga.core.order_saga import OrderSagaOrchestrator
from order_saga.core.payment_ledger import PaymentLedgerService
from order_saga.database.connection import get_db
from tests.conftest import FakeDownstream, no_sleep


def db_override(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return override_get_db


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession], orchestrator: OrderSagaOrchestrator
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client for the order app."""
    app.dependency_overrides[get_db] = db_override(session_factory)
    app.dependency_overrides[get_order_orchestrator] = lambda: orchestrator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def payments_client(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client for the payment ledger app."""
    ledger = PaymentLedgerService(settings=test_settings, sleep=no_sleep)
    payments_app.dependency_overrides[get_db] = db_override(session_factory)
    payments_app.dependency_overrides[get_payment_ledger] = lambda: ledger
    async with AsyncClient(transport=ASGITransport(app=payments_app), base_url="http://test") as ac:
        yield ac
    payments_app.dependency_overrides.clear()


def headers(user_id: uuid.UUID, role: str = "USER", key: str = "api-key-1") -> Dict[str, str]:
    return {
        "X-User-Id": str(user_id),
        "X-User-Role": role,
        "Idempotency-Key": key,
        "X-Correlation-Id": "corr-api",
    }


class TestOrderApi:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_then_replay(
        self, client: AsyncClient, user_id: uuid.UUID, product_id: uuid.UUID
    ) -> None:
        body = {"productId": str(product_id), "quantity": 2}

        created = await client.post("/orders", json=body, headers=headers(user_id))
        assert created.status_code == 201
        data = created.json()
        assert data["idempotentReplay"] is False
        assert data["correlationId"] == "corr-api"
        assert data["order"]["status"] == "CONFIRMED"
        assert data["order"]["totalAmount"] == 20.0
        assert len(data["sagaSteps"]) == 5
        assert created.headers["X-Correlation-Id"] == "corr-api"

        replay = await client.post("/orders", json=body, headers=headers(user_id))
        assert replay.status_code == 200
        assert replay.json()["idempotentReplay"] is True
        assert replay.json()["order"]["id"] == data["order"]["id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_conflict_and_missing_key(
        self, client: AsyncClient, user_id: uuid.UUID, product_id: uuid.UUID
    ) -> None:
        await client.post("/orders", json={"productId": str(product_id), "quantity": 2}, headers=headers(user_id))

        conflict = await client.post(
            "/orders", json={"productId": str(product_id), "quantity": 5}, headers=headers(user_id)
        )
        assert conflict.status_code == 409
        assert conflict.json()["error"]["code"] == "IDEMPOTENCY_CONFLICT"
        assert conflict.json()["correlationId"] == "corr-api"

        no_key = headers(user_id)
        del no_key["Idempotency-Key"]
        missing = await client.post(
            "/orders", json={"productId": str(product_id), "quantity": 1}, headers=no_key
        )
        assert missing.status_code == 400
        assert missing.json()["error"]["code"] == "MISSING_IDEMPOTENCY_KEY"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_identity_headers_are_required(self, client: AsyncClient, product_id: uuid.UUID) -> None:
        body = {"productId": str(product_id), "quantity": 1}

        missing = await client.post("/orders", json=body, headers={"Idempotency-Key": "k"})
        assert missing.status_code == 401
        assert missing.json()["error"]["code"] == "UNAUTHORIZED"

        malformed = await client.post(
            "/orders", json=body, headers={"X-User-Id": "not-a-uuid", "X-User-Role": "USER"}
        )
        assert malformed.status_code == 401

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_body_is_bad_request(self, client: AsyncClient, user_id: uuid.UUID) -> None:
        response = await client.post(
            "/orders", json={"productId": "nope", "quantity": 1}, headers=headers(user_id)
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_REQUEST"

        zero = await client.post(
            "/orders", json={"productId": str(uuid.uuid4()), "quantity": 0}, headers=headers(user_id)
        )
        assert zero.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_saga_failure_status_code(
        self,
        client: AsyncClient,
        downstream: FakeDownstream,
        user_id: uuid.UUID,
        product_id: uuid.UUID,
    ) -> None:
        downstream.reserve_failures = ["timeout", "timeout", "timeout"]

        response = await client.post(
            "/orders", json={"productId": str(product_id), "quantity": 1}, headers=headers(user_id)
        )

        assert response.status_code == 504
        assert response.json()["error"]["code"] == "DOWNSTREAM_TIMEOUT"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_steps_cancel_and_outbox(
        self, client: AsyncClient, user_id: uuid.UUID, product_id: uuid.UUID
    ) -> None:
        created = await client.post(
            "/orders", json={"productId": str(product_id), "quantity": 2}, headers=headers(user_id)
        )
        order_id = created.json()["order"]["id"]

        listed = await client.get("/orders", headers=headers(user_id))
        assert [o["id"] for o in listed.json()] == [order_id]

        steps = await client.get(f"/orders/{order_id}/saga", headers=headers(user_id))
        assert steps.json()[0]["stepName"] == "ORDER_CREATED"

        stranger = await client.get(f"/orders/{order_id}/saga", headers=headers(uuid.uuid4()))
        assert stranger.status_code == 403
        assert stranger.json()["error"]["code"] == "FORBIDDEN"

        cancelled = await client.patch(f"/orders/{order_id}/cancel", headers=headers(user_id))
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "CANCELLED"
        assert cancelled.json()["cancelledAt"] is not None

        forbidden = await client.get("/orders/outbox/pending", headers=headers(user_id))
        assert forbidden.status_code == 403

        pending = await client.get(
            "/orders/outbox/pending", params={"limit": 500}, headers=headers(user_id, role="ADMIN")
        )
        assert pending.status_code == 200
        assert pending.json() == []

        missing = await client.patch(f"/orders/{uuid.uuid4()}/cancel", headers=headers(user_id))
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "ORDER_NOT_FOUND"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness_and_metrics(self, client: AsyncClient) -> None:
        live = await client.get("/health/live")
        assert live.json()["status"] == "alive"

        metrics = await client.get("/metrics")
        assert metrics.status_code == 200
        assert "orders_total" in metrics.text


class TestPaymentApi:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pay_refund_and_list(self, payments_client: AsyncClient) -> None:
        order_id = str(uuid.uuid4())
        pay_body = {"orderId": order_id, "userId": str(uuid.uuid4()), "amount": 20.0, "currency": "usd"}

        paid = await payments_client.post(
            "/payments/pay", json=pay_body, headers={"Idempotency-Key": "o:payment:pay"}
        )
        assert paid.status_code == 200
        assert paid.json()["status"] == "PAID"
        assert paid.json()["idempotentReplay"] is False
        assert paid.json()["providerRef"].startswith("pay-")

        replay = await payments_client.post(
            "/payments/pay", json=pay_body, headers={"Idempotency-Key": "o:payment:pay"}
        )
        assert replay.json()["idempotentReplay"] is True
        assert replay.json()["paymentId"] == paid.json()["paymentId"]

        refund_body = {"orderId": order_id, "amount": 20.0, "idempotencyKey": "o:payment:refund"}
        refunded = await payments_client.post("/payments/refund", json=refund_body)
        assert refunded.status_code == 200
        assert refunded.json()["status"] == "REFUNDED"

        listed = await payments_client.get(f"/payments/order/{order_id}")
        assert [t["operationType"] for t in listed.json()] == ["REFUND", "PAY"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_without_payment(self, payments_client: AsyncClient) -> None:
        response = await payments_client.post(
            "/payments/refund",
            json={"orderId": str(uuid.uuid4()), "amount": 5},
            headers={"Idempotency-Key": "r-1"},
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PAYMENT_NOT_FOUND"
