"""
Error taxonomy shared by the order and payment services.

Every error the HTTP layer renders carries an HTTP status, a machine-readable
code and a human message.
"""


class ServiceError(Exception):
    """Base exception for errors that map onto an HTTP response."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None):
        """
        Initialize service error.

        Args:
            message: Human readable message
            code: Machine readable error code
            status_code: HTTP status to answer with
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(status={self.status_code}, code={self.code})>"


class OrderWorkflowError(ServiceError):
    """Raised by the order saga; status and code come from classification."""

    status_code = 502
    default_code = "SAGA_FAILED"

    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message, code=code, status_code=status_code)


class PaymentError(ServiceError):
    """Raised by the payment ledger service."""

    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message, code=code, status_code=status_code)


class ValidationError(ServiceError):
    """Malformed request payload."""

    status_code = 400
    default_code = "INVALID_REQUEST"


class IdempotencyKeyError(ValidationError):
    """Missing, blank or oversized idempotency key."""

    default_code = "INVALID_IDEMPOTENCY_KEY"


class IdempotencyConflictError(ServiceError):
    """Same idempotency key replayed with a different payload."""

    status_code = 409
    default_code = "IDEMPOTENCY_CONFLICT"


class AuthenticationError(ServiceError):
    """Identity headers missing or malformed."""

    status_code = 401
    default_code = "UNAUTHORIZED"


class AuthorizationError(ServiceError):
    """Caller is neither the owner nor an elevated role."""

    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    status_code = 404
    default_code = "NOT_FOUND"


class ChaosFailureError(ServiceError):
    """Fault injected on purpose in chaos mode."""

    status_code = 500
    default_code = "CHAOS_FAILURE"
