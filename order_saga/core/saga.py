"""
Saga step execution with retry, circuit breaking and audit.

Every forward or compensating action of the order saga goes through
``SagaStepRunner.run``:
1. Tag the active span
2. Apply chaos injection (counts as a failed attempt)
3. Call the action through the dependency's circuit breaker
4. Record the attempt in the step ledger and commit it
5. Back off exponentially and retry until attempts run out

Exhausted steps raise a classified OrderWorkflowError.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from order_saga.core.chaos import ChaosInjector
from order_saga.core.circuit_breaker import CircuitBreaker, CircuitOpenError
from order_saga.core.exceptions import OrderWorkflowError, ServiceError
from order_saga.core.saga_log import SagaStepLedger, StepName, StepStatus
from order_saga.database.models import Order
from order_saga.integrations.downstream import (
    DownstreamHTTPError,
    DownstreamUnavailableError,
)
from order_saga.monitoring.tracing import tag_saga_step

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_STEP_ERROR_CODES = {
    StepName.INVENTORY_RESERVE: "INVENTORY_SERVICE_ERROR",
    StepName.INVENTORY_RELEASE: "INVENTORY_SERVICE_ERROR",
    StepName.PAYMENT_PAY: "PAYMENT_SERVICE_ERROR",
    StepName.PAYMENT_REFUND: "PAYMENT_SERVICE_ERROR",
}


def failure_reason(error: Optional[BaseException]) -> str:
    """Human readable reason stored on steps and orders."""
    if error is None:
        return "Unknown error"
    if isinstance(error, ServiceError):
        return error.message
    if isinstance(error, (DownstreamHTTPError, DownstreamUnavailableError)):
        return error.message
    return str(error) or type(error).__name__


def classify_failure(error: BaseException, step_name: StepName) -> ServiceError:
    """
    Map a step failure onto the workflow error taxonomy.

    Downstream 409 becomes 400 OUT_OF_STOCK for existing clients; other
    downstream statuses become 502 with a per-dependency code.
    """
    if isinstance(error, ServiceError):
        return error

    if isinstance(error, DownstreamHTTPError):
        if error.status_code == 409:
            return OrderWorkflowError(400, "OUT_OF_STOCK", error.message)
        code = _STEP_ERROR_CODES.get(step_name, "DOWNSTREAM_ERROR")
        return OrderWorkflowError(502, code, error.message)

    if isinstance(error, DownstreamUnavailableError):
        return OrderWorkflowError(504, "DOWNSTREAM_TIMEOUT", "Downstream request timeout")

    if isinstance(error, CircuitOpenError):
        return OrderWorkflowError(503, "CIRCUIT_OPEN", str(error))

    return OrderWorkflowError(502, "SAGA_STEP_FAILED", failure_reason(error))


@dataclass
class RetryPolicy:
    """Attempts and exponential backoff for one saga step."""

    max_attempts: int = 3
    initial_backoff_seconds: float = 0.25
    max_backoff_seconds: float = 5.0

    def __post_init__(self) -> None:
        self.max_attempts = max(1, self.max_attempts)
        self.initial_backoff_seconds = max(0.0, self.initial_backoff_seconds)

    def backoff(self, attempt: int) -> float:
        """Sleep after failed ``attempt`` (1-based)."""
        return min(
            self.initial_backoff_seconds * (2 ** max(0, attempt - 1)),
            self.max_backoff_seconds,
        )


@dataclass
class CompensationOutcome:
    """Result of one compensating action; failures are values, not exceptions."""

    step_name: StepName
    succeeded: bool
    error: Optional[ServiceError] = None

    @property
    def reason(self) -> Optional[str]:
        return self.error.message if self.error else None


class SagaStepRunner:
    """Shared retry-and-record routine for saga steps."""

    def __init__(
        self,
        step_ledger: SagaStepLedger,
        policy: Optional[RetryPolicy] = None,
        chaos: Optional[ChaosInjector] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.step_ledger = step_ledger
        self.policy = policy or RetryPolicy()
        self.chaos = chaos or ChaosInjector()
        self._sleep = sleep

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_exponential(
                multiplier=self.policy.initial_backoff_seconds,
                min=0,
                max=self.policy.max_backoff_seconds,
            ),
            retry=retry_if_exception_type(Exception),
            sleep=self._sleep,
            reraise=True,
        )

    async def run(
        self,
        db: AsyncSession,
        order: Order,
        step_name: StepName,
        correlation_id: str,
        breaker: CircuitBreaker,
        action: Callable[[], Awaitable[T]],
        compensation: bool = False,
    ) -> T:
        """
        Execute ``action`` with retries, recording every attempt.

        Args:
            db: Database session; each attempt's row is committed
            order: Order the step belongs to
            step_name: Step vocabulary entry
            correlation_id: Request correlation id
            breaker: Circuit breaker of the called dependency
            action: Zero-argument coroutine function doing the call
            compensation: Whether the step undoes earlier work

        Returns:
            Whatever ``action`` returns

        Raises:
            ServiceError: Classified failure after the last attempt
        """
        max_attempts = self.policy.max_attempts
        try:
            async for attempt in self._retrying():
                with attempt:
                    number = attempt.retry_state.attempt_number
                    tag_saga_step(order.id, step_name.value, compensation, retry_count=number - 1)
                    try:
                        await self.chaos.maybe_inject(step_name.value, correlation_id)
                        result = await breaker.call(action)
                    except Exception as e:
                        exhausted = number >= max_attempts
                        await self.step_ledger.record(
                            db,
                            order.id,
                            step_name,
                            StepStatus.FAILED if exhausted else StepStatus.RETRY_FAILED,
                            retry_count=number,
                            compensation=compensation,
                            detail=failure_reason(e),
                            correlation_id=correlation_id,
                        )
                        await db.commit()
                        logger.warning(
                            "order_saga_retry",
                            order_id=str(order.id),
                            step=step_name.value,
                            attempt=number,
                            max_attempts=max_attempts,
                            compensation=compensation,
                            backoff_seconds=0.0 if exhausted else self.policy.backoff(number),
                            error=failure_reason(e),
                            correlation_id=correlation_id,
                        )
                        raise

                    await self.step_ledger.record(
                        db,
                        order.id,
                        step_name,
                        StepStatus.SUCCESS,
                        retry_count=number - 1,
                        compensation=compensation,
                        detail="completed",
                        correlation_id=correlation_id,
                    )
                    await db.commit()
                    return result
        except Exception as e:
            raise classify_failure(e, step_name) from e

        # AsyncRetrying either returns from the block or reraises
        raise OrderWorkflowError(502, "SAGA_STEP_FAILED", "Saga step failed")

    async def compensate(
        self,
        db: AsyncSession,
        order: Order,
        step_name: StepName,
        correlation_id: str,
        breaker: CircuitBreaker,
        action: Callable[[], Awaitable[Any]],
    ) -> CompensationOutcome:
        """Run a compensating step and report the outcome as a value."""
        try:
            await self.run(
                db, order, step_name, correlation_id, breaker, action, compensation=True
            )
        except ServiceError as e:
            return CompensationOutcome(step_name=step_name, succeeded=False, error=e)
        return CompensationOutcome(step_name=step_name, succeeded=True)
