"""
Downstream HTTP adapter tests against httpx.MockTransport.
"""
import json
import uuid
from decimal import Decimal

import httpx
import pytest

from order_saga.integrations.downstream import (
    DownstreamHTTPError,
    DownstreamUnavailableError,
    InventoryClient,
    PaymentClient,
    ProductClient,
    ServiceClient,
    extract_error_message,
)


def client_for(cls, handler):
    return cls("http://svc.test/", transport=httpx.MockTransport(handler))


class TestErrorMessageExtraction:
    @pytest.mark.unit
    def test_prefers_nested_error_message(self) -> None:
        assert extract_error_message('{"error": {"message": "nested"}, "message": "flat"}', "f") == "nested"

    @pytest.mark.unit
    def test_flat_message_raw_body_and_fallback(self) -> None:
        assert extract_error_message('{"message": "flat"}', "f") == "flat"
        assert extract_error_message("plain text", "f") == "plain text"
        assert extract_error_message('{"other": 1}', "f") == '{"other": 1}'
        assert extract_error_message("  ", "fallback") == "fallback"
        assert extract_error_message(None, "fallback") == "fallback"


class TestServiceClient:
    @pytest.mark.unit
    def test_headers(self) -> None:
        headers = ServiceClient.build_headers("c-1", "k:inventory:reserve")
        assert headers["X-Correlation-Id"] == "c-1"
        assert headers["Idempotency-Key"] == "k:inventory:reserve"
        assert "Idempotency-Key" not in ServiceClient.build_headers("c-1", "  ")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserve_sends_payload_and_headers(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"status": "RESERVED"})

        client = client_for(InventoryClient, handler)
        order_id, product_id = uuid.uuid4(), uuid.uuid4()
        await client.reserve(order_id, product_id, 3, "k:inventory:reserve", "c-1")
        await client.close()

        request = seen[0]
        assert request.url.path == "/inventory/reserve"
        assert request.headers["Idempotency-Key"] == "k:inventory:reserve"
        assert request.headers["X-Correlation-Id"] == "c-1"
        assert json.loads(request.content) == {
            "orderId": str(order_id),
            "productId": str(product_id),
            "quantity": 3,
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_status_becomes_http_error(self) -> None:
        client = client_for(
            InventoryClient,
            lambda request: httpx.Response(409, json={"error": {"message": "Out of stock"}}),
        )
        with pytest.raises(DownstreamHTTPError) as exc_info:
            await client.release(uuid.uuid4(), uuid.uuid4(), 1, "k", "c")
        assert exc_info.value.status_code == 409
        assert exc_info.value.message == "Out of stock"
        assert exc_info.value.service == "inventory-service"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_becomes_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        client = client_for(InventoryClient, handler)
        with pytest.raises(DownstreamUnavailableError) as exc_info:
            await client.reserve(uuid.uuid4(), uuid.uuid4(), 1, "k", "c")
        assert isinstance(exc_info.value.original_error, httpx.ReadTimeout)


class TestProductClient:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_quote(self) -> None:
        client = client_for(
            ProductClient,
            lambda request: httpx.Response(200, json={"id": "p", "name": "Widget", "price": 12.5}),
        )
        quote = await client.get_product(uuid.uuid4(), "c")
        assert quote is not None
        assert quote.price == Decimal("12.5")
        assert quote.name == "Widget"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_or_non_object_body(self) -> None:
        empty = client_for(ProductClient, lambda request: httpx.Response(200, content=b""))
        listing = client_for(ProductClient, lambda request: httpx.Response(200, json=[1, 2]))
        assert await empty.get_product(uuid.uuid4(), "c") is None
        assert await listing.get_product(uuid.uuid4(), "c") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_price(self) -> None:
        client = client_for(ProductClient, lambda request: httpx.Response(200, json={"id": "p"}))
        quote = await client.get_product(uuid.uuid4(), "c")
        assert quote is not None and quote.price is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            b'{"id": "p", "price": NaN}',
            b'{"id": "p", "price": Infinity}',
            b'{"id": "p", "price": "-Infinity"}',
        ],
    )
    async def test_non_finite_price_is_dropped(self, body: bytes) -> None:
        client = client_for(ProductClient, lambda request: httpx.Response(200, content=body))
        quote = await client.get_product(uuid.uuid4(), "c")
        assert quote is not None and quote.price is None


class TestPaymentClient:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pay_payload_and_receipt(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={"paymentId": "p-1", "orderId": "o-1", "status": "PAID", "providerRef": "pay-x"},
            )

        client = client_for(PaymentClient, handler)
        order_id, user_id = uuid.uuid4(), uuid.uuid4()
        receipt = await client.pay(order_id, user_id, Decimal("20.00"), "k:payment:pay", "c")

        assert receipt.status == "PAID"
        assert receipt.provider_ref == "pay-x"
        assert seen[0] == {
            "orderId": str(order_id),
            "userId": str(user_id),
            "amount": 20.0,
            "currency": "USD",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replayed_decline_is_a_failure(self) -> None:
        client = client_for(
            PaymentClient,
            lambda request: httpx.Response(
                200, json={"paymentId": "p-1", "status": "FAILED", "idempotentReplay": True}
            ),
        )
        with pytest.raises(DownstreamHTTPError) as exc_info:
            await client.pay(uuid.uuid4(), uuid.uuid4(), Decimal("1.00"), "k", "c")
        assert exc_info.value.status_code == 502
        assert exc_info.value.message == "Payment provider rejected transaction"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_expects_refunded(self) -> None:
        client = client_for(
            PaymentClient,
            lambda request: httpx.Response(200, json={"paymentId": "r-1", "status": "REFUNDED"}),
        )
        receipt = await client.refund(uuid.uuid4(), Decimal("5.00"), "k:payment:refund", "c")
        assert receipt.payment_id == "r-1"
