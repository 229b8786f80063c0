"""
API routes for the payment ledger service.
"""
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession

from order_saga.core.payment_ledger import PaymentLedgerService, PaymentResult
from order_saga.database.connection import get_db

from .dependencies import get_correlation_id, get_payment_ledger
from .schemas import PaymentResponse, PaymentTransactionView, PayRequest, RefundRequest

payment_router = APIRouter(prefix="/payments", tags=["payments"])


def _to_response(result: PaymentResult) -> PaymentResponse:
    transaction = result.transaction
    return PaymentResponse(
        payment_id=transaction.id,
        order_id=transaction.order_id,
        status=transaction.status,
        provider_ref=transaction.provider_ref,
        idempotent_replay=result.idempotent_replay,
        processed_at=transaction.updated_at,
        correlation_id=result.correlation_id,
    )


@payment_router.post(
    "/pay",
    response_model=PaymentResponse,
    status_code=status.HTTP_200_OK,
    summary="Capture a payment",
    description="Idempotent capture keyed by Idempotency-Key",
)
async def pay(
    request: PayRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db),
    ledger: PaymentLedgerService = Depends(get_payment_ledger),
) -> PaymentResponse:
    result = await ledger.pay(
        db,
        order_id=request.order_id,
        user_id=request.user_id,
        amount=request.amount,
        currency=request.currency,
        idempotency_key=idempotency_key,
        correlation_id=correlation_id,
        body_idempotency_key=request.idempotency_key,
    )
    return _to_response(result)


@payment_router.post(
    "/refund",
    response_model=PaymentResponse,
    status_code=status.HTTP_200_OK,
    summary="Refund a payment",
    description="Idempotent refund of a previous successful capture",
)
async def refund(
    request: RefundRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db),
    ledger: PaymentLedgerService = Depends(get_payment_ledger),
) -> PaymentResponse:
    result = await ledger.refund(
        db,
        order_id=request.order_id,
        amount=request.amount,
        currency=request.currency,
        idempotency_key=idempotency_key,
        correlation_id=correlation_id,
        payment_id=request.payment_id,
        body_idempotency_key=request.idempotency_key,
    )
    return _to_response(result)


@payment_router.get(
    "/order/{order_id}",
    response_model=List[PaymentTransactionView],
    summary="Transactions of an order",
)
async def transactions_for_order(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ledger: PaymentLedgerService = Depends(get_payment_ledger),
) -> List[PaymentTransactionView]:
    """Newest first."""
    transactions = await ledger.transactions_for_order(db, order_id)
    return [PaymentTransactionView.model_validate(t) for t in transactions]
