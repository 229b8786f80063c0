"""Configuration package for the order saga service."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
