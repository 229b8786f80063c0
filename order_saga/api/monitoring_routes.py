"""Health and metrics endpoints mounted on both services."""
from typing import Any, Dict

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from order_saga.monitoring.health import HEALTHY, HealthCheck

from .schemas import HealthCheckResponse

monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Database, Redis and outbox backlog status",
)
async def health() -> Dict[str, Any]:
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness() -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="503 until the database and Redis (when configured) answer",
)
async def readiness() -> Any:
    result = await health_check.readiness()
    if result["status"] != HEALTHY:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    """Prometheus exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
