"""
Structured logging for the order saga processes.

Every process (order API, payment ledger API, outbox dispatcher, event
subscriber) logs JSON through structlog. Request-scoped fields such as
``correlation_id`` come from contextvars bound by the HTTP middleware.
"""
import logging
import sys
from typing import Any, Callable, Dict

import structlog
from pythonjsonlogger import jsonlogger

from order_saga.config import get_settings

EventDict = Dict[str, Any]

# Client libraries that log every request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosqlite")


def service_context(service: str) -> Callable[[Any, str, EventDict], EventDict]:
    """
    Build a processor stamping the emitting process onto every event.

    Args:
        service: Process name, e.g. ``order-service`` or ``outbox-dispatcher``

    Returns:
        structlog processor
    """
    settings = get_settings()

    def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service)
        event_dict["app_env"] = settings.app_env
        return event_dict

    return add_service_context


def drop_empty_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Omit keyword fields that were passed as None (e.g. an absent actor)."""
    return {key: value for key, value in event_dict.items() if value is not None}


def setup_logging(service: str = "order-service") -> None:
    """
    Configure structlog and the stdlib root logger for one process.

    Args:
        service: Name stamped on every event as ``service``
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            service_context(service),
            drop_empty_fields,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # uvicorn and SQLAlchemy log through stdlib; render them as JSON too
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            static_fields={"service": service},
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(settings.log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    if settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    structlog.get_logger(__name__).info(
        "logging_configured",
        service=service,
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
