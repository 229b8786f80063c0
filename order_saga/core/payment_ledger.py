"""
Payment ledger service.

Maintains idempotent PAY and REFUND transactions for orders:
1. Normalize the idempotency key and return the stored transaction on replay
2. Apply chaos injection and the simulated provider delay
3. Record the outcome (PAID, FAILED or REFUNDED) under the key's unique constraint
"""
import asyncio
import random
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from order_saga.config import Settings, get_settings
from order_saga.core.chaos import ChaosConfig, ChaosInjector
from order_saga.core.correlation import normalize_correlation_id
from order_saga.core.exceptions import PaymentError, ValidationError
from order_saga.core.idempotency import (
    IdempotencyLedger,
    IdempotencyScope,
    normalize_idempotency_key,
)
from order_saga.core.saga_log import StepName
from order_saga.database.models import PaymentTransaction
from order_saga.monitoring.metrics import metrics
from order_saga.monitoring.tracing import tag_saga_step

logger = structlog.get_logger(__name__)

DECLINE_REASON = "Provider rejected transaction"
MIN_REFUND_DELAY_MS = 100


class OperationType(str, Enum):
    PAY = "PAY"
    REFUND = "REFUND"


class PaymentStatus(str, Enum):
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


@dataclass
class PaymentResult:
    """Stored transaction plus whether it was replayed."""

    transaction: PaymentTransaction
    idempotent_replay: bool
    correlation_id: str


class PaymentLedgerService:
    """
    Idempotent PAY/REFUND ledger backing the order saga's payment steps.

    Every operation is keyed by a globally unique idempotency key; repeating
    a key returns the first outcome unchanged, including declines.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        idempotency_ledger: Optional[IdempotencyLedger] = None,
        chaos: Optional[ChaosInjector] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize payment ledger.

        Args:
            settings: Application settings (defaults to environment settings)
            idempotency_ledger: Key ledger shared by pay and refund
            chaos: Fault injector
            rng: Random source for simulated declines
            sleep: Delay function for simulated provider latency
        """
        self.settings = settings or get_settings()
        self.idempotency = idempotency_ledger or IdempotencyLedger()
        self.chaos = chaos or ChaosInjector(ChaosConfig.from_settings(self.settings))
        self._rng = rng or random.Random()
        self._sleep = sleep

        logger.info(
            "payment_ledger_initialized",
            failure_probability=self.settings.payment_failure_probability,
            delay_ms=self.settings.payment_delay_ms,
        )

    @staticmethod
    def _validate(order_id: Optional[uuid.UUID], amount: Optional[Decimal], currency: str) -> str:
        if order_id is None:
            raise ValidationError("orderId is required")
        if amount is None or amount <= 0:
            raise ValidationError("amount must be greater than 0")
        currency = (currency or "USD").strip().upper()
        if len(currency) != 3:
            raise ValidationError("currency must be a 3-letter code")
        return currency

    async def _delay(self, delay_ms: int) -> None:
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000)

    def _replay(self, existing: PaymentTransaction, correlation_id: str) -> PaymentResult:
        logger.info(
            "payment_idempotent_replay",
            payment_id=str(existing.id),
            order_id=str(existing.order_id),
            operation=existing.operation_type,
            status=existing.status,
            correlation_id=correlation_id,
        )
        return PaymentResult(transaction=existing, idempotent_replay=True, correlation_id=correlation_id)

    async def pay(
        self,
        db: AsyncSession,
        order_id: Optional[uuid.UUID],
        user_id: Optional[uuid.UUID],
        amount: Optional[Decimal],
        currency: str,
        idempotency_key: Optional[str],
        correlation_id: Optional[str],
        body_idempotency_key: Optional[str] = None,
    ) -> PaymentResult:
        """
        Capture a payment for an order.

        Args:
            db: Database session
            order_id: Order being paid
            user_id: Paying user
            amount: Amount to capture
            currency: ISO currency code
            idempotency_key: Idempotency-Key header value
            correlation_id: Correlation id (generated when absent)
            body_idempotency_key: Fallback key from the request body

        Returns:
            PaymentResult: PAID transaction, or the replayed original

        Raises:
            PaymentError: 502 PAYMENT_DECLINED when the provider declines
        """
        key = normalize_idempotency_key(idempotency_key, body_idempotency_key)
        correlation_id = normalize_correlation_id(correlation_id)
        currency = self._validate(order_id, amount, currency)
        tag_saga_step(order_id, StepName.PAYMENT_PAY.value, compensation=False)

        async with self.idempotency.guard(IdempotencyScope.PAYMENT_PAY, key):
            existing = await self.idempotency.lookup(db, IdempotencyScope.PAYMENT_PAY, key)
            if existing is not None:
                return self._replay(existing, correlation_id)

            await self.chaos.maybe_inject(StepName.PAYMENT_PAY.value, correlation_id)
            await self._delay(self.settings.payment_delay_ms)

            declined = self._rng.random() < self.settings.payment_failure_probability
            transaction = PaymentTransaction(
                id=uuid.uuid4(),
                order_id=order_id,
                user_id=user_id,
                amount=amount,
                currency=currency,
                operation_type=OperationType.PAY.value,
                status=PaymentStatus.FAILED.value if declined else PaymentStatus.PAID.value,
                provider_ref=None if declined else f"pay-{uuid.uuid4()}",
                idempotency_key=key,
                correlation_id=correlation_id,
                failure_reason=DECLINE_REASON if declined else None,
            )
            transaction, replayed = await self.idempotency.claim(
                db, IdempotencyScope.PAYMENT_PAY, transaction
            )
            await db.commit()
            if replayed:
                return self._replay(transaction, correlation_id)

        metrics.record_payment_transaction(OperationType.PAY.value, transaction.status)
        if declined:
            logger.warning(
                "payment_pay_declined",
                payment_id=str(transaction.id),
                order_id=str(order_id),
                amount=str(amount),
                correlation_id=correlation_id,
            )
            raise PaymentError(502, "PAYMENT_DECLINED", "Payment provider rejected transaction")

        logger.info(
            "payment_pay_succeeded",
            payment_id=str(transaction.id),
            order_id=str(order_id),
            amount=str(amount),
            currency=currency,
            provider_ref=transaction.provider_ref,
            correlation_id=correlation_id,
        )
        return PaymentResult(transaction=transaction, idempotent_replay=False, correlation_id=correlation_id)

    async def _find_paid_transaction(
        self, db: AsyncSession, order_id: uuid.UUID, payment_id: Optional[uuid.UUID]
    ) -> PaymentTransaction:
        stmt = select(PaymentTransaction).where(
            PaymentTransaction.order_id == order_id,
            PaymentTransaction.operation_type == OperationType.PAY.value,
            PaymentTransaction.status == PaymentStatus.PAID.value,
        )
        if payment_id is not None:
            stmt = stmt.where(PaymentTransaction.id == payment_id)
        else:
            stmt = stmt.order_by(PaymentTransaction.created_at.desc()).limit(1)

        result = await db.execute(stmt)
        paid = result.scalars().first()
        if paid is None:
            raise PaymentError(404, "PAYMENT_NOT_FOUND", "No successful payment found for order")
        return paid

    async def refund(
        self,
        db: AsyncSession,
        order_id: Optional[uuid.UUID],
        amount: Optional[Decimal],
        currency: str,
        idempotency_key: Optional[str],
        correlation_id: Optional[str],
        payment_id: Optional[uuid.UUID] = None,
        body_idempotency_key: Optional[str] = None,
    ) -> PaymentResult:
        """
        Refund a previous successful payment.

        The reference payment is ``payment_id`` when given, otherwise the most
        recent PAID capture for the order.

        Raises:
            PaymentError: 404 PAYMENT_NOT_FOUND when nothing was captured
        """
        key = normalize_idempotency_key(idempotency_key, body_idempotency_key)
        correlation_id = normalize_correlation_id(correlation_id)
        currency = self._validate(order_id, amount, currency)
        tag_saga_step(order_id, StepName.PAYMENT_REFUND.value, compensation=True)

        async with self.idempotency.guard(IdempotencyScope.PAYMENT_REFUND, key):
            existing = await self.idempotency.lookup(db, IdempotencyScope.PAYMENT_REFUND, key)
            if existing is not None:
                return self._replay(existing, correlation_id)

            paid = await self._find_paid_transaction(db, order_id, payment_id)

            await self.chaos.maybe_inject(StepName.PAYMENT_REFUND.value, correlation_id)
            await self._delay(max(MIN_REFUND_DELAY_MS, self.settings.payment_delay_ms // 2))

            transaction = PaymentTransaction(
                id=uuid.uuid4(),
                order_id=order_id,
                user_id=paid.user_id,
                amount=amount,
                currency=currency,
                operation_type=OperationType.REFUND.value,
                status=PaymentStatus.REFUNDED.value,
                provider_ref=f"refund-{uuid.uuid4()}",
                idempotency_key=key,
                correlation_id=correlation_id,
            )
            transaction, replayed = await self.idempotency.claim(
                db, IdempotencyScope.PAYMENT_REFUND, transaction
            )
            await db.commit()
            if replayed:
                return self._replay(transaction, correlation_id)

        metrics.record_payment_transaction(OperationType.REFUND.value, transaction.status)
        logger.info(
            "payment_refund_succeeded",
            payment_id=str(transaction.id),
            order_id=str(order_id),
            refunded_payment_id=str(paid.id),
            amount=str(amount),
            correlation_id=correlation_id,
        )
        return PaymentResult(transaction=transaction, idempotent_replay=False, correlation_id=correlation_id)

    async def transactions_for_order(
        self, db: AsyncSession, order_id: uuid.UUID
    ) -> List[PaymentTransaction]:
        """All transactions of an order, newest first."""
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.order_id == order_id)
            .order_by(PaymentTransaction.created_at.desc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def close(self) -> None:
        await self.idempotency.close()
