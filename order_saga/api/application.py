"""
Application factory shared by the order service and the payment ledger.

Both services have the same shell: table creation on startup, the
correlation middleware, the error envelope, the monitoring router and a
uvicorn entrypoint. They differ only in their business router.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Sequence

import structlog
from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from order_saga.config import get_settings
from order_saga.database.connection import close_db, init_db

from .dependencies import close_services
from .errors import register_exception_handlers
from .middleware import correlation_id_middleware
from .monitoring_routes import monitoring_router

logger = structlog.get_logger(__name__)

VERSION = "1.0.0"


def build_lifespan(service: str) -> Callable[[FastAPI], Any]:
    """Startup creates the tables; shutdown closes clients, Redis and the pool."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        settings = get_settings()
        logger.info(
            "application_startup",
            service=service,
            env=settings.app_env,
            chaos_mode=settings.chaos_mode,
            redis_enabled=settings.redis_url is not None,
        )
        try:
            await init_db()
        except Exception as e:
            logger.error("database_initialization_failed", service=service, error=str(e))
            raise

        yield

        logger.info("application_shutdown", service=service)
        try:
            await close_services()
        finally:
            await close_db()

    return lifespan


def create_app(
    service: str,
    title: str,
    description: str,
    routers: Sequence[APIRouter],
) -> FastAPI:
    """
    Assemble one of the service applications.

    Args:
        service: Process name used in logs and the root endpoint
        title: OpenAPI title
        description: OpenAPI description
        routers: Business routers mounted before the monitoring router

    Returns:
        FastAPI: Configured application
    """
    settings = get_settings()
    app = FastAPI(
        title=title,
        description=description,
        version=VERSION,
        lifespan=build_lifespan(service),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id"],
    )
    app.middleware("http")(correlation_id_middleware)
    register_exception_handlers(app)

    for router in routers:
        app.include_router(router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"], include_in_schema=False)
    async def root() -> dict[str, Any]:
        return {
            "service": service,
            "version": VERSION,
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def serve(app_path: str, port: int) -> None:
    """Run an application under uvicorn with the configured worker count."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        app_path,
        host=settings.api_host,
        port=port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )
