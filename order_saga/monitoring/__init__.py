"""Logging, Prometheus metrics, span tagging and health probes."""
from .health import HealthCheck
from .logging import setup_logging
from .metrics import MetricsCollector, metrics
from .tracing import tag_saga_step

__all__ = ["HealthCheck", "MetricsCollector", "metrics", "setup_logging", "tag_saga_step"]
