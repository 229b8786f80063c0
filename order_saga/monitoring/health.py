"""
Health probes for the order saga services.

Readiness requires the database and, when configured, Redis. ``/health``
additionally reports the outbox backlog so operators can see events stuck
in PENDING after a Redis outage.
"""
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_saga.config import Settings, get_settings
from order_saga.database.connection import get_session_factory
from order_saga.database.models import OutboxEvent

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


def _result(status: str, started: float, **fields: Any) -> Dict[str, Any]:
    return {"status": status, "latency_ms": round((time.perf_counter() - started) * 1000, 2), **fields}


class HealthCheck:
    """Runs dependency probes; probes report failures instead of raising."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def check_database(self) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            async with self.session_factory() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            return _result(UNHEALTHY, started, error=str(e))
        return _result(HEALTHY, started)

    async def check_redis(self) -> Dict[str, Any]:
        """Ping Redis; an unconfigured Redis is healthy with publication disabled."""
        started = time.perf_counter()
        if not self.settings.redis_url:
            return _result(HEALTHY, started, message="not configured, event publication disabled")

        client = aioredis.from_url(self.settings.redis_url)
        try:
            await client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            return _result(UNHEALTHY, started, error=str(e))
        finally:
            await client.aclose()
        return _result(HEALTHY, started)

    async def check_outbox_backlog(self) -> Dict[str, Any]:
        """Informational: PENDING events and the age of the oldest one."""
        started = time.perf_counter()
        try:
            async with self.session_factory() as db:
                row = (
                    await db.execute(
                        select(func.count(), func.min(OutboxEvent.created_at)).where(
                            OutboxEvent.status == "PENDING"
                        )
                    )
                ).one()
        except Exception as e:
            logger.warning("outbox_backlog_check_failed", error=str(e))
            return _result(UNHEALTHY, started, error=str(e))

        pending, oldest = row
        return _result(
            HEALTHY,
            started,
            pending=int(pending),
            oldest_pending_at=oldest.isoformat() if oldest else None,
        )

    async def _run(self, probes: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]]) -> Dict[str, Any]:
        checks = {name: await probe() for name, probe in probes.items()}
        healthy = all(check["status"] == HEALTHY for check in checks.values())
        return {"status": HEALTHY if healthy else UNHEALTHY, "checks": checks}

    async def check_all(self) -> Dict[str, Any]:
        """Readiness probes plus the outbox backlog."""
        return await self._run(
            {
                "database": self.check_database,
                "redis": self.check_redis,
                "outbox": self.check_outbox_backlog,
            }
        )

    async def readiness(self) -> Dict[str, Any]:
        """Only hard dependencies decide readiness."""
        return await self._run({"database": self.check_database, "redis": self.check_redis})

    async def liveness(self) -> Dict[str, Any]:
        """Does not touch dependencies."""
        return {"status": "alive", "message": "Application is running"}
