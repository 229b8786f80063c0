"""
Span tagging for saga steps.

Instrumentation itself (exporters, FastAPI/httpx instrumentors) is wired by
the deployment; this module only annotates whatever span is current. With no
SDK installed the current span is a no-op and the calls cost nothing.
"""
from typing import Any, Optional

from opentelemetry import trace


def tag_saga_step(
    order_id: Any,
    step_name: str,
    compensation: bool,
    retry_count: Optional[int] = None,
) -> None:
    """
    Attach saga attributes to the active span.

    Args:
        order_id: Order the step belongs to
        step_name: Saga step vocabulary entry (e.g. PAYMENT_PAY)
        compensation: Whether the step undoes earlier work
        retry_count: Attempts already spent on this step, if known
    """
    span = trace.get_current_span()
    span.set_attribute("order_id", str(order_id))
    span.set_attribute("saga_step", step_name)
    span.set_attribute("compensation", compensation)
    if retry_count is not None:
        span.set_attribute("retry_count", retry_count)
