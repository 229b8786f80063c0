"""
Pydantic schemas for API request/response models.

Bodies are camelCase on the wire; Python attributes stay snake_case.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class CreateOrderRequest(CamelModel):
    """Request schema for creating an order."""

    product_id: Optional[UUID] = Field(default=None, description="Product to order")
    quantity: Optional[int] = Field(default=None, description="Units to order (> 0)")

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"productId": "9b2f3c5e-6a1d-4a4e-9c53-2f1f7a0b8d11", "quantity": 2}
            ]
        }
    )


class OrderView(CamelModel):
    """Order snapshot returned by every order endpoint."""

    id: UUID = Field(..., description="Order ID")
    user_id: UUID = Field(..., description="Owning user")
    product_id: UUID = Field(..., description="Ordered product")
    quantity: int = Field(..., description="Units ordered")
    unit_price: Decimal = Field(..., description="Quoted unit price")
    total_amount: Decimal = Field(..., description="unitPrice x quantity")
    status: str = Field(..., description="Saga status")
    failure_reason: Optional[str] = Field(default=None, description="Why the saga failed")
    idempotency_key: str = Field(..., description="Client idempotency key")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")
    cancelled_at: Optional[datetime] = Field(default=None, description="Cancellation timestamp")

    @field_serializer("unit_price", "total_amount")
    def serialize_money(self, value: Decimal) -> float:
        return float(value)


class SagaStepView(CamelModel):
    """One attempt from the saga audit trail."""

    id: int
    order_id: UUID
    step_name: str
    step_status: str
    retry_count: int
    compensation: bool
    detail: Optional[str] = None
    correlation_id: Optional[str] = None
    created_at: datetime


class OrderWorkflowResponse(CamelModel):
    """Response schema for order creation and replays."""

    idempotent_replay: bool = Field(..., description="True when an earlier result was replayed")
    order: OrderView
    correlation_id: str = Field(..., description="Effective correlation id")
    saga_steps: List[SagaStepView] = Field(default_factory=list)


class PendingOutboxEventView(CamelModel):
    """Outbox event still waiting for publication."""

    id: int
    aggregate_type: str
    aggregate_id: UUID
    event_type: str
    payload: Dict[str, Any]
    status: str
    created_at: datetime
    published_at: Optional[datetime] = None


class PayRequest(CamelModel):
    """Request schema for capturing a payment."""

    order_id: Optional[UUID] = Field(default=None, description="Order being paid")
    user_id: Optional[UUID] = Field(default=None, description="Paying user")
    amount: Optional[Decimal] = Field(default=None, description="Amount to capture")
    currency: str = Field(default="USD", description="Currency code (e.g., USD)")
    idempotency_key: Optional[str] = Field(
        default=None, description="Fallback when the Idempotency-Key header is absent"
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.upper()


class RefundRequest(CamelModel):
    """Request schema for refunding a payment."""

    order_id: Optional[UUID] = Field(default=None, description="Order being refunded")
    payment_id: Optional[UUID] = Field(
        default=None, description="Capture to refund (latest PAID capture if omitted)"
    )
    amount: Optional[Decimal] = Field(default=None, description="Amount to refund")
    currency: str = Field(default="USD", description="Currency code")
    idempotency_key: Optional[str] = Field(default=None)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper()


class PaymentResponse(CamelModel):
    """Response schema for pay and refund."""

    payment_id: UUID = Field(..., description="Transaction ID")
    order_id: UUID
    status: str = Field(..., description="PAID, FAILED or REFUNDED")
    provider_ref: Optional[str] = None
    idempotent_replay: bool
    processed_at: datetime
    correlation_id: str


class PaymentTransactionView(CamelModel):
    """Ledger row as listed for an order."""

    id: UUID
    order_id: UUID
    user_id: Optional[UUID] = None
    amount: Decimal
    currency: str
    operation_type: str
    status: str
    provider_ref: Optional[str] = None
    idempotency_key: str
    correlation_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_serializer("amount")
    def serialize_amount(self, value: Decimal) -> float:
        return float(value)


class ErrorBody(BaseModel):
    code: str
    message: str


class ErrorResponse(CamelModel):
    """Error envelope rendered by the exception handlers."""

    error: ErrorBody
    correlation_id: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
