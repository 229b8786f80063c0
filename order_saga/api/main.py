"""
Order service FastAPI application.

Run with ``order-saga-api`` or ``uvicorn order_saga.api.main:app``.
"""
from order_saga.config import get_settings
from order_saga.monitoring.logging import setup_logging

from .application import create_app, serve
from .routes import order_router

setup_logging("order-service")

app = create_app(
    service="order-service",
    title="Order Saga Service",
    description=(
        "Order fulfillment coordinated as a saga over the inventory and payment "
        "services, with idempotent creation, retries, circuit breaking, "
        "compensation and a transactional outbox."
    ),
    routers=[order_router],
)


def main() -> None:
    serve("order_saga.api.main:app", get_settings().api_port)


if __name__ == "__main__":
    main()
