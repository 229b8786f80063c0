"""
API routes for the order service.
"""
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from order_saga.core.order_saga import OrderSagaOrchestrator
from order_saga.database.connection import get_db

from .dependencies import Caller, get_caller, get_correlation_id, get_order_orchestrator
from .schemas import (
    CreateOrderRequest,
    OrderView,
    OrderWorkflowResponse,
    PendingOutboxEventView,
    SagaStepView,
)

order_router = APIRouter(prefix="/orders", tags=["orders"])


@order_router.post(
    "",
    response_model=OrderWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Create an order and run its saga; replays return the stored result",
)
async def create_order(
    request: CreateOrderRequest,
    response: Response,
    caller: Caller = Depends(get_caller),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: OrderSagaOrchestrator = Depends(get_order_orchestrator),
) -> OrderWorkflowResponse:
    """
    Create a new order.

    This endpoint is idempotent - a repeated Idempotency-Key returns the
    original order with 200 instead of 201.
    """
    result = await orchestrator.create_order(
        db,
        user_id=caller.user_id,
        role=caller.role,
        idempotency_key=idempotency_key,
        correlation_id=correlation_id,
        product_id=request.product_id,
        quantity=request.quantity,
    )
    if result.idempotent_replay:
        response.status_code = status.HTTP_200_OK

    return OrderWorkflowResponse(
        idempotent_replay=result.idempotent_replay,
        order=OrderView.model_validate(result.order),
        correlation_id=result.correlation_id,
        saga_steps=[SagaStepView.model_validate(step) for step in result.saga_steps],
    )


@order_router.get(
    "",
    response_model=List[OrderView],
    summary="List orders",
    description="Admins may filter by any user or list all; others see their own orders",
)
async def list_orders(
    user_id: Optional[uuid.UUID] = Query(default=None, alias="userId"),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: OrderSagaOrchestrator = Depends(get_order_orchestrator),
) -> List[OrderView]:
    orders = await orchestrator.list_orders(db, caller.user_id, caller.role, user_id)
    return [OrderView.model_validate(order) for order in orders]


@order_router.get(
    "/outbox/pending",
    response_model=List[PendingOutboxEventView],
    summary="Pending outbox events",
    description="Admin-only view of events that were not published yet",
)
async def pending_outbox(
    limit: Optional[int] = Query(default=None),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: OrderSagaOrchestrator = Depends(get_order_orchestrator),
) -> List[PendingOutboxEventView]:
    events = await orchestrator.pending_outbox_events(db, caller.user_id, caller.role, limit)
    return [PendingOutboxEventView.model_validate(event) for event in events]


@order_router.get(
    "/{order_id}/saga",
    response_model=List[SagaStepView],
    summary="Saga step history",
)
async def saga_steps(
    order_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: OrderSagaOrchestrator = Depends(get_order_orchestrator),
) -> List[SagaStepView]:
    steps = await orchestrator.list_saga_steps(db, order_id, caller.user_id, caller.role)
    return [SagaStepView.model_validate(step) for step in steps]


@order_router.patch(
    "/{order_id}/cancel",
    response_model=OrderView,
    summary="Cancel an order",
    description="Refunds and releases inventory as the order status requires",
)
async def cancel_order(
    order_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: OrderSagaOrchestrator = Depends(get_order_orchestrator),
) -> OrderView:
    order = await orchestrator.cancel_order(
        db, order_id, caller.user_id, caller.role, correlation_id
    )
    return OrderView.model_validate(order)
