"""
Circuit breaker guarding calls to a single downstream dependency.

Counts consecutive failures; reaching the threshold opens the breaker for a
fixed window and resets the counter. While open every call is rejected
without touching the network. A success resets the counter.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from order_saga.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitOpenError(Exception):
    """Raised when a call is rejected by an open breaker."""

    def __init__(self, name: str, retry_after_seconds: float = 0.0):
        super().__init__(f"{name} circuit is OPEN")
        self.name = name
        self.retry_after_seconds = retry_after_seconds


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    State checks, the guarded call and the bookkeeping that follows run under
    one asyncio lock, so concurrent callers serialize on the breaker and a
    threshold crossing is never double counted.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        open_duration_seconds: float = 4.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Dependency name used in errors, logs and metrics
            failure_threshold: Consecutive failures before opening (min 1)
            open_duration_seconds: How long the breaker stays open (min 1s)
            clock: Monotonic time source
        """
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.open_duration_seconds = max(1.0, open_duration_seconds)
        self.consecutive_failures = 0
        self.open_until: Optional[float] = None
        self._clock = clock
        self._lock = asyncio.Lock()

        metrics.set_circuit_breaker_state(self.name, "closed")

    @property
    def state(self) -> str:
        if self.open_until is not None and self._clock() < self.open_until:
            return "open"
        return "closed"

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Execute an awaitable with circuit breaker protection.

        Args:
            func: Coroutine function performing the downstream call
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Whatever the call returns

        Raises:
            CircuitOpenError: If the breaker is open
        """
        async with self._lock:
            now = self._clock()
            if self.open_until is not None and now < self.open_until:
                metrics.record_circuit_breaker_rejection(self.name)
                logger.warning(
                    "circuit_breaker_rejected",
                    dependency=self.name,
                    retry_after_seconds=round(self.open_until - now, 3),
                )
                raise CircuitOpenError(self.name, self.open_until - now)

            try:
                result = await func(*args, **kwargs)
            except Exception:
                self._on_failure()
                raise

            self._on_success()
            return result

    def _on_success(self) -> None:
        if self.open_until is not None:
            self.open_until = None
            metrics.set_circuit_breaker_state(self.name, "closed")
            logger.info("circuit_breaker_closed", dependency=self.name)
        self.consecutive_failures = 0

    def _on_failure(self) -> None:
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.failure_threshold:
            self.open_until = self._clock() + self.open_duration_seconds
            logger.warning(
                "circuit_breaker_opened",
                dependency=self.name,
                failure_count=self.consecutive_failures,
                open_seconds=self.open_duration_seconds,
            )
            self.consecutive_failures = 0
            metrics.set_circuit_breaker_state(self.name, "open")
