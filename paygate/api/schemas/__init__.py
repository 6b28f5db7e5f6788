"""
API Schemas package.

Pydantic models for request/response validation.
"""

from .jobs import (
    ErrorDetail,
    ErrorResponse,
    JobCreateRequest,
    JobResponse,
    PaymentRequest,
    PaymentResponse,
    CompletionRequest,
    DeliveryResponse,
    DeliveryListResponse,
    ServiceResponse,
    ServiceListResponse,
)
from .webhooks import (
    WebhookRegisterRequest,
    WebhookRegisterResponse,
)

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
    "JobCreateRequest",
    "JobResponse",
    "PaymentRequest",
    "PaymentResponse",
    "CompletionRequest",
    "DeliveryResponse",
    "DeliveryListResponse",
    "ServiceResponse",
    "ServiceListResponse",
    "WebhookRegisterRequest",
    "WebhookRegisterResponse",
]
