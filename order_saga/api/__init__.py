"""FastAPI applications and routes."""
from .main import app
from .schemas import (
    CreateOrderRequest,
    OrderView,
    OrderWorkflowResponse,
    PaymentResponse,
    SagaStepView,
)

__all__ = [
    "app",
    "CreateOrderRequest",
    "OrderView",
    "OrderWorkflowResponse",
    "PaymentResponse",
    "SagaStepView",
]
