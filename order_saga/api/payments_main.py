"""
Payment ledger FastAPI application.

Runs as its own service; the order saga reaches it through
``PaymentClient`` at ``payment_service_url``.
"""
from order_saga.config import get_settings
from order_saga.monitoring.logging import setup_logging

from .application import create_app, serve
from .payment_routes import payment_router

setup_logging("payment-ledger")

app = create_app(
    service="payment-ledger",
    title="Payment Ledger Service",
    description="Idempotent PAY/REFUND ledger backing the order saga.",
    routers=[payment_router],
)


def main() -> None:
    serve("order_saga.api.payments_main:app", get_settings().payment_api_port)


if __name__ == "__main__":
    main()
