"""
Order saga orchestrator.

Drives an order through CREATED -> INVENTORY_RESERVED -> PAYMENT_PENDING ->
CONFIRMED, compensating with refund and inventory release when a step fails.
Every exit path writes a definite status and exactly one outbox event for the
terminal transitions (confirmed, failed, cancelled).
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Awaitable, Callable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from order_saga.config import Settings, get_settings
from order_saga.core.chaos import ChaosConfig, ChaosInjector
from order_saga.core.circuit_breaker import CircuitBreaker
from order_saga.core.correlation import normalize_correlation_id
from order_saga.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    IdempotencyConflictError,
    NotFoundError,
    OrderWorkflowError,
    ServiceError,
    ValidationError,
)
from order_saga.core.idempotency import (
    IdempotencyLedger,
    IdempotencyScope,
    derive_idempotency_key,
    normalize_idempotency_key,
)
from order_saga.core.outbox import OrderEventType, OutboxStore, clamp_pending_limit
from order_saga.core.saga import (
    CompensationOutcome,
    RetryPolicy,
    SagaStepRunner,
    failure_reason,
)
from order_saga.core.saga_log import SagaStepLedger, StepName, StepStatus
from order_saga.database.models import Order, OutboxEvent, SagaStep
from order_saga.integrations.downstream import (
    DownstreamHTTPError,
    DownstreamUnavailableError,
    InventoryClient,
    PaymentClient,
    ProductClient,
)
from order_saga.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_FAILURE_REASON_LENGTH = 500

# Money columns are Numeric(12, 2)
MONEY_QUANTUM = Decimal("0.01")
MAX_ORDER_TOTAL = Decimal("9999999999.99")


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    INVENTORY_RESERVED = "INVENTORY_RESERVED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


REFUNDABLE_STATUSES = {OrderStatus.CONFIRMED.value, OrderStatus.PAYMENT_PENDING.value}
RELEASABLE_STATUSES = {
    OrderStatus.INVENTORY_RESERVED.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PAYMENT_PENDING.value,
}


@dataclass
class OrderCreationResult:
    """Outcome of create_order, replayed or fresh."""

    order: Order
    idempotent_replay: bool
    correlation_id: str
    saga_steps: List[SagaStep] = field(default_factory=list)


class OrderSagaOrchestrator:
    """
    Sequences reservation, payment, confirmation and compensation.

    Long-lived collaborators (HTTP clients, one circuit breaker per
    dependency, the idempotency ledger) are built once and shared by every
    request handled by this instance.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        product_client: Optional[ProductClient] = None,
        inventory_client: Optional[InventoryClient] = None,
        payment_client: Optional[PaymentClient] = None,
        inventory_breaker: Optional[CircuitBreaker] = None,
        payment_breaker: Optional[CircuitBreaker] = None,
        idempotency_ledger: Optional[IdempotencyLedger] = None,
        step_ledger: Optional[SagaStepLedger] = None,
        outbox: Optional[OutboxStore] = None,
        chaos: Optional[ChaosInjector] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the orchestrator.

        Args:
            settings: Application settings (defaults to environment settings)
            product_client: Pricing adapter
            inventory_client: Inventory adapter
            payment_client: Payment ledger adapter
            inventory_breaker: Breaker guarding inventory calls
            payment_breaker: Breaker guarding payment calls
            idempotency_ledger: Order-creation key ledger
            step_ledger: Saga step audit trail
            outbox: Outbox store and publisher
            chaos: Fault injector applied inside the retry loop
            sleep: Backoff sleep function
        """
        self.settings = settings or get_settings()
        timeout = self.settings.downstream_timeout_seconds

        self.product_client = product_client or ProductClient(
            self.settings.product_service_url, timeout
        )
        self.inventory_client = inventory_client or InventoryClient(
            self.settings.inventory_service_url, timeout
        )
        self.payment_client = payment_client or PaymentClient(
            self.settings.payment_service_url, timeout
        )
        self.inventory_breaker = inventory_breaker or CircuitBreaker(
            "inventory-service",
            self.settings.circuit_breaker_failure_threshold,
            self.settings.circuit_breaker_open_seconds,
        )
        self.payment_breaker = payment_breaker or CircuitBreaker(
            "payment-service",
            self.settings.circuit_breaker_failure_threshold,
            self.settings.circuit_breaker_open_seconds,
        )
        self.idempotency = idempotency_ledger or IdempotencyLedger()
        self.step_ledger = step_ledger or SagaStepLedger()
        self.outbox = outbox or OutboxStore(channel=self.settings.event_channel)
        self.runner = SagaStepRunner(
            self.step_ledger,
            RetryPolicy(
                max_attempts=self.settings.saga_max_attempts,
                initial_backoff_seconds=self.settings.saga_initial_backoff_seconds,
                max_backoff_seconds=self.settings.saga_max_backoff_seconds,
            ),
            chaos or ChaosInjector(ChaosConfig.from_settings(self.settings)),
            sleep,
        )

        logger.info(
            "order_saga_orchestrator_initialized",
            max_attempts=self.runner.policy.max_attempts,
            initial_backoff_seconds=self.runner.policy.initial_backoff_seconds,
            breaker_threshold=self.inventory_breaker.failure_threshold,
            chaos_mode=self.runner.chaos.config.enabled,
        )

    # ------------------------------------------------------------------
    # Authorization helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_authentication(user_id: Optional[uuid.UUID], role: Optional[str]) -> None:
        if user_id is None:
            raise AuthenticationError("Missing authenticated user")
        if role is None or not role.strip():
            raise AuthenticationError("Missing authenticated role")

    def is_admin(self, role: Optional[str]) -> bool:
        return role is not None and role.strip().upper() == self.settings.admin_role.upper()

    async def _load_order(self, db: AsyncSession, order_id: uuid.UUID) -> Order:
        order = await db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        return order

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_order(
        self,
        db: AsyncSession,
        user_id: Optional[uuid.UUID],
        role: Optional[str],
        idempotency_key: Optional[str],
        correlation_id: Optional[str],
        product_id: Optional[uuid.UUID],
        quantity: Optional[int],
    ) -> OrderCreationResult:
        """
        Create an order and run its saga, or replay a previous attempt.

        Args:
            db: Database session
            user_id: Authenticated user
            role: Authenticated role
            idempotency_key: Client-supplied Idempotency-Key
            correlation_id: Optional correlation id (generated when absent)
            product_id: Product to order
            quantity: Units to order (> 0)

        Returns:
            OrderCreationResult: Order, replay flag, correlation id and step history

        Raises:
            ServiceError: Validation, authorization, conflict or classified saga failure
        """
        self._validate_authentication(user_id, role)
        if product_id is None:
            raise ValidationError("productId is required")
        if quantity is None or quantity <= 0:
            raise ValidationError("quantity must be greater than 0")
        key = normalize_idempotency_key(idempotency_key)
        correlation_id = normalize_correlation_id(correlation_id)

        async with self.idempotency.guard(IdempotencyScope.ORDER_CREATE, key):
            existing = await self.idempotency.lookup(db, IdempotencyScope.ORDER_CREATE, key)
            if existing is not None:
                return await self._replay(db, existing, user_id, product_id, quantity, correlation_id)

            unit_price = await self._quote_price(product_id, correlation_id)
            total_amount = unit_price * quantity
            if total_amount > MAX_ORDER_TOTAL:
                raise ValidationError("order total exceeds the largest supported amount")

            order = Order(
                id=uuid.uuid4(),
                user_id=user_id,
                product_id=product_id,
                quantity=quantity,
                unit_price=unit_price,
                total_amount=total_amount,
                status=OrderStatus.CREATED.value,
                idempotency_key=key,
            )
            order, replayed = await self.idempotency.claim(db, IdempotencyScope.ORDER_CREATE, order)
            if replayed:
                return await self._replay(db, order, user_id, product_id, quantity, correlation_id)

            await self.step_ledger.record(
                db,
                order.id,
                StepName.ORDER_CREATED,
                StepStatus.SUCCESS,
                detail="Order initialized",
                correlation_id=correlation_id,
            )
            await db.commit()

            logger.info(
                "order_saga_started",
                order_id=str(order.id),
                user_id=str(user_id),
                product_id=str(product_id),
                quantity=quantity,
                total_amount=str(order.total_amount),
                correlation_id=correlation_id,
            )
            return await self._run_saga(db, order, user_id, correlation_id)

    async def _replay(
        self,
        db: AsyncSession,
        existing: Order,
        user_id: uuid.UUID,
        product_id: uuid.UUID,
        quantity: int,
        correlation_id: str,
    ) -> OrderCreationResult:
        if existing.user_id != user_id:
            raise AuthorizationError("Idempotency key belongs to another user")
        if existing.product_id != product_id or existing.quantity != quantity:
            raise IdempotencyConflictError("Idempotency key already used with different payload")

        metrics.record_order_outcome("replayed")
        logger.info(
            "order_idempotent_replay",
            order_id=str(existing.id),
            status=existing.status,
            correlation_id=correlation_id,
        )
        return OrderCreationResult(
            order=existing,
            idempotent_replay=True,
            correlation_id=correlation_id,
            saga_steps=await self.step_ledger.list_for_order(db, existing.id),
        )

    async def _quote_price(self, product_id: uuid.UUID, correlation_id: str) -> Decimal:
        try:
            quote = await self.product_client.get_product(product_id, correlation_id)
        except DownstreamHTTPError as e:
            if e.status_code == 404:
                raise OrderWorkflowError(404, "PRODUCT_NOT_FOUND", "Product not found") from e
            raise OrderWorkflowError(502, "PRODUCT_SERVICE_ERROR", e.message) from e
        except DownstreamUnavailableError as e:
            raise OrderWorkflowError(
                502, "PRODUCT_SERVICE_UNAVAILABLE", "Product service unavailable"
            ) from e

        if quote is None:
            raise OrderWorkflowError(
                502, "BAD_PRODUCT_RESPONSE", "Invalid response from product-service"
            )
        price = quote.price
        if price is not None and price.is_finite() and 0 < price <= MAX_ORDER_TOTAL:
            # Round to the stored scale; a quote rounding to 0.00 is rejected below
            price = price.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
        else:
            price = None
        if price is None or price <= 0:
            raise OrderWorkflowError(
                502, "INVALID_PRODUCT_PRICE", "Invalid product price from product-service"
            )
        return price

    async def _run_saga(
        self,
        db: AsyncSession,
        order: Order,
        actor_user_id: uuid.UUID,
        correlation_id: str,
    ) -> OrderCreationResult:
        started = time.time()
        inventory_reserved = False
        payment_captured = False

        try:
            await self._reserve_inventory(db, order, correlation_id)
            inventory_reserved = True
            await self._set_status(db, order, OrderStatus.INVENTORY_RESERVED)

            await self.step_ledger.record(
                db,
                order.id,
                StepName.PAYMENT_PENDING,
                StepStatus.SUCCESS,
                detail="Ready to process payment",
                correlation_id=correlation_id,
            )
            await self._set_status(db, order, OrderStatus.PAYMENT_PENDING)

            await self._capture_payment(db, order, correlation_id)
            payment_captured = True

            order.status = OrderStatus.CONFIRMED.value
            order.failure_reason = None
            await self.step_ledger.record(
                db,
                order.id,
                StepName.ORDER_CONFIRMED,
                StepStatus.SUCCESS,
                detail="Order confirmed",
                correlation_id=correlation_id,
            )
            event = self.outbox.stage(
                db, OrderEventType.ORDER_CONFIRMED, order, actor_user_id, correlation_id
            )
            await db.commit()
        except Exception as e:
            await self._fail_order(
                db,
                order,
                actor_user_id,
                correlation_id,
                e,
                inventory_reserved=inventory_reserved,
                payment_captured=payment_captured,
                started=started,
            )
            if isinstance(e, ServiceError):
                raise
            raise OrderWorkflowError(502, "SAGA_FAILED", failure_reason(e)) from e

        await self.outbox.publish(db, event)

        duration = time.time() - started
        metrics.record_order_outcome("confirmed", duration)
        logger.info(
            "order_saga_succeeded",
            order_id=str(order.id),
            duration_seconds=duration,
            correlation_id=correlation_id,
        )
        return OrderCreationResult(
            order=order,
            idempotent_replay=False,
            correlation_id=correlation_id,
            saga_steps=await self.step_ledger.list_for_order(db, order.id),
        )

    async def _fail_order(
        self,
        db: AsyncSession,
        order: Order,
        actor_user_id: uuid.UUID,
        correlation_id: str,
        error: Exception,
        inventory_reserved: bool,
        payment_captured: bool,
        started: float,
    ) -> None:
        if isinstance(error, SQLAlchemyError):
            # The unit of work is unusable; start over from the committed row
            await db.rollback()
            await db.refresh(order)

        reason = failure_reason(error)

        # Reverse completion order: payment was captured after the reservation
        outcomes: List[CompensationOutcome] = []
        if payment_captured:
            outcomes.append(await self._refund_payment(db, order, correlation_id))
        if inventory_reserved:
            outcomes.append(await self._release_inventory(db, order, correlation_id))

        for outcome in outcomes:
            if not outcome.succeeded:
                logger.error(
                    "order_compensation_failed",
                    order_id=str(order.id),
                    step=outcome.step_name.value,
                    error=outcome.reason,
                    correlation_id=correlation_id,
                )

        order.status = OrderStatus.FAILED.value
        order.failure_reason = reason[:MAX_FAILURE_REASON_LENGTH]
        event = self.outbox.stage(db, OrderEventType.ORDER_FAILED, order, actor_user_id, correlation_id)
        await db.commit()
        await self.outbox.publish(db, event)

        duration = time.time() - started
        metrics.record_order_outcome("failed", duration)
        logger.error(
            "order_saga_failed",
            order_id=str(order.id),
            error=reason,
            compensations=[o.step_name.value for o in outcomes],
            duration_seconds=duration,
            correlation_id=correlation_id,
        )

    async def _set_status(self, db: AsyncSession, order: Order, status: OrderStatus) -> None:
        order.status = status.value
        order.failure_reason = None
        await db.commit()

    # ------------------------------------------------------------------
    # Saga steps
    # ------------------------------------------------------------------

    async def _reserve_inventory(self, db: AsyncSession, order: Order, correlation_id: str) -> None:
        key = derive_idempotency_key(order.idempotency_key, "inventory", "reserve")

        async def reserve() -> None:
            await self.inventory_client.reserve(
                order.id, order.product_id, order.quantity, key, correlation_id
            )

        await self.runner.run(
            db, order, StepName.INVENTORY_RESERVE, correlation_id, self.inventory_breaker, reserve
        )

    async def _capture_payment(self, db: AsyncSession, order: Order, correlation_id: str) -> None:
        key = derive_idempotency_key(order.idempotency_key, "payment", "pay")

        async def pay() -> None:
            await self.payment_client.pay(
                order.id, order.user_id, order.total_amount, key, correlation_id
            )

        await self.runner.run(
            db, order, StepName.PAYMENT_PAY, correlation_id, self.payment_breaker, pay
        )

    async def _refund_payment(
        self, db: AsyncSession, order: Order, correlation_id: str
    ) -> CompensationOutcome:
        key = derive_idempotency_key(order.idempotency_key, "payment", "refund")

        async def refund() -> None:
            await self.payment_client.refund(order.id, order.total_amount, key, correlation_id)

        return await self.runner.compensate(
            db, order, StepName.PAYMENT_REFUND, correlation_id, self.payment_breaker, refund
        )

    async def _release_inventory(
        self, db: AsyncSession, order: Order, correlation_id: str
    ) -> CompensationOutcome:
        key = derive_idempotency_key(order.idempotency_key, "inventory", "release")

        async def release() -> None:
            await self.inventory_client.release(
                order.id, order.product_id, order.quantity, key, correlation_id
            )

        return await self.runner.compensate(
            db, order, StepName.INVENTORY_RELEASE, correlation_id, self.inventory_breaker, release
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_order(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        user_id: Optional[uuid.UUID],
        role: Optional[str],
        correlation_id: Optional[str],
    ) -> Order:
        """
        Cancel an order, refunding and releasing as its status requires.

        Compensation failures are surfaced so the caller never sees a
        half-compensated order reported as cancelled.
        """
        self._validate_authentication(user_id, role)
        correlation_id = normalize_correlation_id(correlation_id)

        order = await self._load_order(db, order_id)
        if not self.is_admin(role) and order.user_id != user_id:
            raise AuthorizationError("You can only cancel your own orders")

        if order.status == OrderStatus.CANCELLED.value:
            return order
        if order.status == OrderStatus.FAILED.value:
            raise OrderWorkflowError(400, "ORDER_ALREADY_FAILED", "Failed orders cannot be cancelled")

        if order.status in REFUNDABLE_STATUSES:
            outcome = await self._refund_payment(db, order, correlation_id)
            if not outcome.succeeded:
                raise OrderWorkflowError(502, "PAYMENT_REFUND_FAILED", outcome.reason or "Refund failed")

        if order.status in RELEASABLE_STATUSES:
            outcome = await self._release_inventory(db, order, correlation_id)
            if not outcome.succeeded:
                raise OrderWorkflowError(
                    502, "INVENTORY_RELEASE_FAILED", outcome.reason or "Inventory release failed"
                )

        order.status = OrderStatus.CANCELLED.value
        order.cancelled_at = datetime.now(timezone.utc)
        await self.step_ledger.record(
            db,
            order.id,
            StepName.ORDER_CANCELLED,
            StepStatus.SUCCESS,
            detail="Order cancelled by user",
            correlation_id=correlation_id,
        )
        event = self.outbox.stage(db, OrderEventType.ORDER_CANCELLED, order, user_id, correlation_id)
        await db.commit()
        await self.outbox.publish(db, event)

        metrics.record_order_outcome("cancelled")
        logger.info(
            "order_cancelled",
            order_id=str(order.id),
            cancelled_by=str(user_id),
            correlation_id=correlation_id,
        )
        return order

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_orders(
        self,
        db: AsyncSession,
        user_id: Optional[uuid.UUID],
        role: Optional[str],
        requested_user_id: Optional[uuid.UUID] = None,
    ) -> List[Order]:
        """Newest first. Only an elevated role may look at other users' orders."""
        self._validate_authentication(user_id, role)

        stmt = select(Order).order_by(Order.created_at.desc())
        if self.is_admin(role):
            if requested_user_id is not None:
                stmt = stmt.where(Order.user_id == requested_user_id)
        else:
            stmt = stmt.where(Order.user_id == user_id)

        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def list_saga_steps(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        user_id: Optional[uuid.UUID],
        role: Optional[str],
    ) -> List[SagaStep]:
        self._validate_authentication(user_id, role)
        order = await self._load_order(db, order_id)
        if not self.is_admin(role) and order.user_id != user_id:
            raise AuthorizationError("You can only view saga steps for your own orders")
        return await self.step_ledger.list_for_order(db, order_id)

    async def pending_outbox_events(
        self,
        db: AsyncSession,
        user_id: Optional[uuid.UUID],
        role: Optional[str],
        limit: Optional[int] = None,
    ) -> List[OutboxEvent]:
        """Operator view of events still waiting for publication."""
        self._validate_authentication(user_id, role)
        if not self.is_admin(role):
            raise AuthorizationError("Only admins can view pending outbox events")
        safe_limit = clamp_pending_limit(limit, self.settings.outbox_pending_default_limit)
        return await self.outbox.fetch_pending(db, safe_limit)

    async def close(self) -> None:
        """Release HTTP clients and the idempotency cache connection."""
        await self.product_client.close()
        await self.inventory_client.close()
        await self.payment_client.close()
        await self.idempotency.close()
