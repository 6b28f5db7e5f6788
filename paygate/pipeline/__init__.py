"""
Payment-Gated Job Pipeline.

- entities: Job, WebhookEndpoint, DeliveryAttempt and result envelopes
- persistence: SQLite job store with conditional state transitions
- catalog: Static service catalog
- orchestrator: State machine driver (import paygate.pipeline.orchestrator)
"""

from .entities import (
    JobState,
    FulfillmentKind,
    WebhookEvent,
    DeliveryState,
    RejectionReason,
    Job,
    WebhookEndpoint,
    DeliveryAttempt,
    VerificationVerdict,
    TextResult,
    ImageResult,
    PaymentOutcome,
)
from .errors import (
    PipelineError,
    InvalidOperationError,
    JobNotFoundError,
    UnknownServiceError,
    InvalidInputError,
    ConflictError,
    PaymentReusedError,
    VerificationRejected,
    GatewayUnavailableError,
    ProviderError,
    MalformedOutputError,
    ProviderTimeoutError,
    ProviderAuthError,
    WebhookRegistrationError,
    DeliveryFailedError,
)
from .catalog import CatalogEntry, get_entry, list_entries
from .persistence import JobStore

__all__ = [
    # Entities
    "JobState",
    "FulfillmentKind",
    "WebhookEvent",
    "DeliveryState",
    "RejectionReason",
    "Job",
    "WebhookEndpoint",
    "DeliveryAttempt",
    "VerificationVerdict",
    "TextResult",
    "ImageResult",
    "PaymentOutcome",
    # Errors
    "PipelineError",
    "InvalidOperationError",
    "JobNotFoundError",
    "UnknownServiceError",
    "InvalidInputError",
    "ConflictError",
    "PaymentReusedError",
    "VerificationRejected",
    "GatewayUnavailableError",
    "ProviderError",
    "MalformedOutputError",
    "ProviderTimeoutError",
    "ProviderAuthError",
    "WebhookRegistrationError",
    "DeliveryFailedError",
    # Catalog
    "CatalogEntry",
    "get_entry",
    "list_entries",
    # Persistence
    "JobStore",
]
