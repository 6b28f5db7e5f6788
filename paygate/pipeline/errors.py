"""
Pipeline exceptions.

Every error carries a stable ``code`` that is recorded on failed jobs and
returned to API callers instead of a raw exception message.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    code = "PipelineError"


class InvalidOperationError(PipelineError):
    """Raised when an operation violates a job invariant."""

    code = "InvalidOperation"


class JobNotFoundError(PipelineError):
    """Raised when a requested job does not exist."""

    code = "NotFound"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class UnknownServiceError(PipelineError):
    """Raised when a service key is not in the catalog."""

    code = "UnknownService"

    def __init__(self, service_key: str):
        self.service_key = service_key
        super().__init__(f"Unknown service: {service_key}")


class InvalidInputError(PipelineError):
    """Raised when a job's input does not fit its fulfillment kind."""

    code = "InvalidInput"


class ConflictError(PipelineError):
    """
    Raised when a conditional state transition loses.

    The job was not in the state the transition requires, usually because
    another request already advanced it.
    """

    code = "Conflict"

    def __init__(
        self,
        job_id: str,
        expected_status: str,
        actual_status: str,
        message: Optional[str] = None,
    ):
        self.job_id = job_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        super().__init__(
            message
            or f"Conflict for job {job_id}: "
            f"expected state '{expected_status}', got '{actual_status}'"
        )


class PaymentReusedError(ConflictError):
    """Raised when a transaction hash has already paid for another job."""

    def __init__(self, job_id: str, tx_hash: str, actual_status: str = "pending"):
        self.tx_hash = tx_hash
        super().__init__(
            job_id,
            expected_status="pending",
            actual_status=actual_status,
            message=f"Transaction {tx_hash} has already paid for another job",
        )


class VerificationRejected(PipelineError):
    """
    Raised when a payment claim does not satisfy a job's price.

    The job stays pending; the caller may resubmit a new claim.
    """

    code = "VerificationRejected"

    def __init__(self, reason: str, detail: str):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}")


class GatewayUnavailableError(PipelineError):
    """Transient blockchain RPC failure (network error, timeout, 5xx)."""

    code = "GatewayUnavailable"


class ProviderError(PipelineError):
    """Raised when a generation provider reports a failure."""

    code = "ProviderError"


class MalformedOutputError(ProviderError):
    """Raised when a provider's response violates its output contract."""

    code = "MalformedOutput"


class ProviderTimeoutError(PipelineError, TimeoutError):
    """Raised when a provider call exceeds its timeout."""

    code = "TimeoutError"

    def __init__(self, kind: str, timeout: float):
        self.kind = kind
        self.timeout = timeout
        super().__init__(f"{kind} provider timed out after {timeout}s")


class ProviderAuthError(PipelineError):
    """Raised when a callback or registration lacks the required API key."""

    code = "Unauthorized"


class WebhookRegistrationError(PipelineError):
    """Raised when a webhook endpoint is not acceptable."""

    code = "InvalidWebhook"


class DeliveryFailedError(PipelineError):
    """
    Raised for a single failed webhook attempt.

    ``permanent`` is True for 4xx responses, which are not retried.
    """

    code = "DeliveryFailed"

    def __init__(self, message: str, status: Optional[int] = None, permanent: bool = False):
        self.status = status
        self.permanent = permanent
        super().__init__(message)
