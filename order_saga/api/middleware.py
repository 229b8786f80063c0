"""Request middleware shared by the order and payment apps."""
import time
from typing import Any

import structlog
from fastapi import Request, Response

from order_saga.core.correlation import CORRELATION_ID_HEADER, normalize_correlation_id

logger = structlog.get_logger(__name__)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Resolve the request's correlation id and echo it on the response.

    The id is kept on ``request.state`` for handlers and bound into the
    structlog context so every log line of the request carries it.
    """
    correlation_id = normalize_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
    request.state.correlation_id = correlation_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        correlation_id=correlation_id,
        http_method=request.method,
        http_path=request.url.path,
    )

    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error("request_crashed", error=str(e), latency_ms=_elapsed_ms(started))
        raise
    else:
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        logger.info("request_handled", status_code=response.status_code, latency_ms=_elapsed_ms(started))
        return response
    finally:
        structlog.contextvars.unbind_contextvars("correlation_id", "http_method", "http_path")
