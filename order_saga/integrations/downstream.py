"""
HTTP adapters for the pricing, inventory and payment services.

Implements:
- Correlation id and per-call idempotency key headers
- Error classification into HTTP-status and unavailable/timeout errors
- Error message extraction from ``{"error": {"message"}}``, ``{"message"}``
  or the raw body
"""
import json
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
import structlog

from order_saga.core.correlation import CORRELATION_ID_HEADER

logger = structlog.get_logger(__name__)

IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
DEFAULT_CURRENCY = "USD"


class DownstreamError(Exception):
    """Base exception for downstream call failures."""

    def __init__(self, message: str, service: str):
        super().__init__(message)
        self.message = message
        self.service = service


class DownstreamHTTPError(DownstreamError):
    """Downstream answered with a non-2xx status (or an unusable success)."""

    def __init__(self, message: str, service: str, status_code: int, body: str = ""):
        super().__init__(message, service)
        self.status_code = status_code
        self.body = body


class DownstreamUnavailableError(DownstreamError):
    """Downstream could not be reached or timed out."""

    def __init__(
        self, message: str, service: str, original_error: Optional[Exception] = None
    ):
        super().__init__(message, service)
        self.original_error = original_error


def extract_error_message(body: Optional[str], fallback: str) -> str:
    """
    Pull a human message out of an error response body.

    Args:
        body: Raw response text
        fallback: Message used when the body is empty

    Returns:
        str: ``error.message``, else ``message``, else the raw body
    """
    if body is None or not body.strip():
        return fallback

    try:
        parsed = json.loads(body)
    except ValueError:
        return body

    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict) and error.get("message") is not None:
            return str(error["message"])
        if parsed.get("message") is not None:
            return str(parsed["message"])
    return body


@dataclass
class ProductQuote:
    """Price lookup result."""

    product_id: str
    price: Optional[Decimal]
    name: Optional[str] = None


@dataclass
class PaymentReceipt:
    """Payment ledger response."""

    payment_id: Optional[str]
    order_id: Optional[str]
    status: str
    provider_ref: Optional[str]
    idempotent_replay: bool

    @classmethod
    def from_json(cls, body: Dict[str, Any]) -> "PaymentReceipt":
        return cls(
            payment_id=body.get("paymentId"),
            order_id=body.get("orderId"),
            status=str(body.get("status", "")),
            provider_ref=body.get("providerRef"),
            idempotent_replay=bool(body.get("idempotentReplay", False)),
        )


class ServiceClient:
    """
    Thin async HTTP client for one downstream service.

    Owns an ``httpx.AsyncClient``; pass ``transport`` to stub the network.
    """

    service_name = "downstream"

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout_seconds,
            transport=transport,
        )

    @staticmethod
    def build_headers(correlation_id: str, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            CORRELATION_ID_HEADER: correlation_id,
        }
        if idempotency_key and idempotency_key.strip():
            headers[IDEMPOTENCY_KEY_HEADER] = idempotency_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        correlation_id: str,
        idempotency_key: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                path,
                json=payload,
                headers=self.build_headers(correlation_id, idempotency_key),
            )
        except httpx.TransportError as e:
            # Timeouts are transport errors too
            logger.warning(
                "downstream_unavailable",
                service=self.service_name,
                path=path,
                error=str(e),
                correlation_id=correlation_id,
            )
            raise DownstreamUnavailableError(
                f"{self.service_name} unavailable", self.service_name, e
            ) from e

        if response.status_code >= 400:
            message = extract_error_message(response.text, "Downstream request failed")
            logger.warning(
                "downstream_error_response",
                service=self.service_name,
                path=path,
                status_code=response.status_code,
                error=message,
                correlation_id=correlation_id,
            )
            raise DownstreamHTTPError(message, self.service_name, response.status_code, response.text)

        return response

    async def close(self) -> None:
        await self._client.aclose()


class ProductClient(ServiceClient):
    """Pricing lookups against the product service."""

    service_name = "product-service"

    async def get_product(self, product_id: uuid.UUID, correlation_id: str) -> Optional[ProductQuote]:
        """
        Fetch the current quote for a product.

        Returns:
            Optional[ProductQuote]: None when the body is empty or not a JSON object
        """
        response = await self._request("GET", f"/products/{product_id}", correlation_id)
        if not response.content or not response.content.strip():
            return None
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict):
            return None

        price: Optional[Decimal] = None
        if body.get("price") is not None:
            try:
                price = Decimal(str(body["price"]))
            except InvalidOperation:
                price = None
            if price is not None and not price.is_finite():
                price = None
        return ProductQuote(
            product_id=str(body.get("id", product_id)),
            price=price,
            name=body.get("name"),
        )


class InventoryClient(ServiceClient):
    """Stock reservation against the inventory service."""

    service_name = "inventory-service"

    @staticmethod
    def _payload(order_id: uuid.UUID, product_id: uuid.UUID, quantity: int) -> Dict[str, Any]:
        return {"orderId": str(order_id), "productId": str(product_id), "quantity": quantity}

    async def reserve(
        self,
        order_id: uuid.UUID,
        product_id: uuid.UUID,
        quantity: int,
        idempotency_key: str,
        correlation_id: str,
    ) -> None:
        await self._request(
            "POST",
            "/inventory/reserve",
            correlation_id,
            idempotency_key,
            self._payload(order_id, product_id, quantity),
        )

    async def release(
        self,
        order_id: uuid.UUID,
        product_id: uuid.UUID,
        quantity: int,
        idempotency_key: str,
        correlation_id: str,
    ) -> None:
        await self._request(
            "POST",
            "/inventory/release",
            correlation_id,
            idempotency_key,
            self._payload(order_id, product_id, quantity),
        )


class PaymentClient(ServiceClient):
    """Captures and refunds against the payment ledger service."""

    service_name = "payment-service"

    def _receipt(self, response: httpx.Response, expected_status: str) -> PaymentReceipt:
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise DownstreamHTTPError(
                "Invalid response from payment-service", self.service_name, 502, response.text
            )

        receipt = PaymentReceipt.from_json(body)
        if receipt.status != expected_status:
            # A replayed decline comes back as 200 with status FAILED
            raise DownstreamHTTPError(
                "Payment provider rejected transaction",
                self.service_name,
                502,
                response.text,
            )
        return receipt

    async def pay(
        self,
        order_id: uuid.UUID,
        user_id: uuid.UUID,
        amount: Decimal,
        idempotency_key: str,
        correlation_id: str,
        currency: str = DEFAULT_CURRENCY,
    ) -> PaymentReceipt:
        response = await self._request(
            "POST",
            "/payments/pay",
            correlation_id,
            idempotency_key,
            {
                "orderId": str(order_id),
                "userId": str(user_id),
                "amount": float(amount),
                "currency": currency,
            },
        )
        return self._receipt(response, "PAID")

    async def refund(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        idempotency_key: str,
        correlation_id: str,
        currency: str = DEFAULT_CURRENCY,
    ) -> PaymentReceipt:
        response = await self._request(
            "POST",
            "/payments/refund",
            correlation_id,
            idempotency_key,
            {
                "orderId": str(order_id),
                "amount": float(amount),
                "currency": currency,
            },
        )
        return self._receipt(response, "REFUNDED")
