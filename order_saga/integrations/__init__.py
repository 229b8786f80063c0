"""Downstream service integrations."""
from .downstream import (
    DownstreamError,
    DownstreamHTTPError,
    DownstreamUnavailableError,
    InventoryClient,
    PaymentClient,
    ProductClient,
)

__all__ = [
    "DownstreamError",
    "DownstreamHTTPError",
    "DownstreamUnavailableError",
    "InventoryClient",
    "PaymentClient",
    "ProductClient",
]
