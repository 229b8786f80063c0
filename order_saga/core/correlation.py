"""Correlation id helpers."""
import uuid
from typing import Optional

CORRELATION_ID_HEADER = "X-Correlation-Id"


def normalize_correlation_id(value: Optional[str]) -> str:
    """Trimmed caller-supplied id, or a fresh UUID4 when absent or blank."""
    if value is None or not value.strip():
        return str(uuid.uuid4())
    return value.strip()
