"""
Fault injection for resilience testing.

When chaos mode is on, each guarded stage may be delayed and may fail with a
CHAOS_FAILURE error. Probabilities are clamped to [0, 1].
"""
import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from order_saga.config import Settings
from order_saga.core.exceptions import ChaosFailureError
from order_saga.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class FailureType(Enum):
    """Kinds of injected faults."""

    LATENCY = "latency"
    ERROR = "error"


@dataclass
class ChaosConfig:
    """Chaos injection parameters."""

    enabled: bool = False
    latency_probability: float = 0.0
    error_probability: float = 0.0
    delay_ms: int = 0

    def __post_init__(self) -> None:
        self.latency_probability = max(0.0, min(1.0, self.latency_probability))
        self.error_probability = max(0.0, min(1.0, self.error_probability))
        self.delay_ms = max(0, self.delay_ms)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChaosConfig":
        return cls(
            enabled=settings.chaos_mode,
            latency_probability=settings.chaos_latency_probability,
            error_probability=settings.chaos_error_probability,
            delay_ms=settings.chaos_delay_ms,
        )


class ChaosInjector:
    """Injects latency and failures according to a ChaosConfig."""

    def __init__(
        self,
        config: Optional[ChaosConfig] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or ChaosConfig()
        self._rng = rng or random.Random()
        self._sleep = sleep

    def _chance(self, probability: float) -> bool:
        return self._rng.random() < probability

    async def maybe_inject(self, stage: str, correlation_id: Optional[str] = None) -> None:
        """
        Possibly delay and possibly fail the current stage.

        Args:
            stage: Name of the guarded stage (saga step or ledger operation)
            correlation_id: Request correlation id for the log line

        Raises:
            ChaosFailureError: When an error is injected
        """
        if not self.config.enabled:
            return

        if self._chance(self.config.latency_probability) and self.config.delay_ms > 0:
            metrics.record_chaos_injection(FailureType.LATENCY.value)
            await self._sleep(self.config.delay_ms / 1000)

        if self._chance(self.config.error_probability):
            metrics.record_chaos_injection(FailureType.ERROR.value)
            logger.warning(
                "chaos_failure_injected",
                stage=stage,
                correlation_id=correlation_id,
            )
            raise ChaosFailureError("Injected failure by chaos mode")
