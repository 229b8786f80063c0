"""Exception handlers rendering the error envelope."""
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from order_saga.core.exceptions import ServiceError

logger = structlog.get_logger(__name__)


def error_body(code: str, message: str, correlation_id: Optional[str]) -> Dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "correlationId": correlation_id,
    }


def _correlation_id(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render a ServiceError with its own status and code."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_service_error",
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code, exc.message, _correlation_id(request)),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies are plain 400s, not FastAPI's 422."""
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    logger.warning("request_validation_failed", error=message, path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("INVALID_REQUEST", message, _correlation_id(request)),
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(
            "INTERNAL_ERROR",
            "An unexpected error occurred. Please try again later.",
            _correlation_id(request),
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)
