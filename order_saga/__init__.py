"""Order fulfillment saga service."""

__version__ = "1.0.0"
