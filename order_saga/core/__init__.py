"""
Core order saga logic.

Submodules are imported directly (``order_saga.core.order_saga``,
``order_saga.core.payment_ledger``, ...); the integrations package depends on
``order_saga.core.correlation``, so this package only re-exports the error
taxonomy.
"""
from .exceptions import (
    AuthenticationError,
    AuthorizationError,
    ChaosFailureError,
    IdempotencyConflictError,
    IdempotencyKeyError,
    NotFoundError,
    OrderWorkflowError,
    PaymentError,
    ServiceError,
    ValidationError,
)

__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "ChaosFailureError",
    "IdempotencyConflictError",
    "IdempotencyKeyError",
    "NotFoundError",
    "OrderWorkflowError",
    "PaymentError",
    "ServiceError",
    "ValidationError",
]
