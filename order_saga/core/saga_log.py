"""Append-only audit trail of saga step attempts."""
import uuid
from enum import Enum
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from order_saga.database.models import SagaStep
from order_saga.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StepName(str, Enum):
    """Fixed vocabulary of saga steps."""

    ORDER_CREATED = "ORDER_CREATED"
    INVENTORY_RESERVE = "INVENTORY_RESERVE"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_PAY = "PAYMENT_PAY"
    ORDER_CONFIRMED = "ORDER_CONFIRMED"
    PAYMENT_REFUND = "PAYMENT_REFUND"
    INVENTORY_RELEASE = "INVENTORY_RELEASE"
    ORDER_CANCELLED = "ORDER_CANCELLED"


class StepStatus(str, Enum):
    """Outcome of a single attempt."""

    SUCCESS = "SUCCESS"
    RETRY_FAILED = "RETRY_FAILED"
    FAILED = "FAILED"


class SagaStepLedger:
    """
    Writes and reads saga step rows.

    Rows are only ever inserted. The caller owns the transaction; ``record``
    flushes so the row gets its id but does not commit.
    """

    async def record(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        step_name: StepName,
        step_status: StepStatus,
        retry_count: int = 0,
        compensation: bool = False,
        detail: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> SagaStep:
        """
        Append one attempt to the trail.

        Args:
            db: Database session
            order_id: Owning order
            step_name: Step vocabulary entry
            step_status: SUCCESS, RETRY_FAILED or FAILED
            retry_count: Attempt bookkeeping for the step
            compensation: Whether this attempt undoes earlier work
            detail: Free text, e.g. the failure reason
            correlation_id: Request correlation id

        Returns:
            SagaStep: The inserted row
        """
        step = SagaStep(
            order_id=order_id,
            step_name=StepName(step_name).value,
            step_status=StepStatus(step_status).value,
            retry_count=retry_count,
            compensation=compensation,
            detail=detail,
            correlation_id=correlation_id,
        )
        db.add(step)
        await db.flush()

        metrics.record_step_attempt(step.step_name, step.step_status, compensation)
        logger.debug(
            "saga_step_recorded",
            order_id=str(order_id),
            step=step.step_name,
            status=step.step_status,
            retry_count=retry_count,
            compensation=compensation,
        )
        return step

    async def list_for_order(self, db: AsyncSession, order_id: uuid.UUID) -> List[SagaStep]:
        """Every attempt for an order, oldest first."""
        stmt = (
            select(SagaStep)
            .where(SagaStep.order_id == order_id)
            .order_by(SagaStep.created_at, SagaStep.id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())
