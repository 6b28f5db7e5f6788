"""
Job operation schemas.

Request/response models for job creation, polling, payment
confirmation, remote completion callbacks and delivery history.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

ADDRESS_EXAMPLE = "0x1111111111111111111111111111111111111111"


class ErrorDetail(BaseModel):
    """Structured error body, returned under "detail"."""

    code: str = Field(..., description="Stable error code, e.g. PAYMENT_VERIFICATION_FAILED, CONFLICT")
    reason: Optional[str] = Field(default=None, description="Rejection reason for payment verification failures")
    message: str = Field(..., description="Human-readable message")


class ErrorResponse(BaseModel):
    """Error response body."""

    detail: ErrorDetail


class JobCreateRequest(BaseModel):
    """Request to create a pending job."""

    service_key: str = Field(..., description="Catalog service key", json_schema_extra={"examples": ["brainstorm"]})
    requester: str = Field(..., description="Requester wallet address", json_schema_extra={"examples": [ADDRESS_EXAMPLE]})
    input: dict = Field(
        default_factory=dict,
        description="Job input (max 10000 bytes). Text services read 'prompt' or 'input'; image services require 'prompt'",
        json_schema_extra={"examples": [{"prompt": "Launch ideas for a fitness app"}]},
    )
    provider: Optional[str] = Field(
        default=None,
        description="Wallet address that receives payment and fulfills the job. Defaults to the platform wallet",
    )


class JobResponse(BaseModel):
    """Job details."""

    job_id: str
    service_key: str
    requester: str
    provider: str
    state: str = Field(..., description="pending | paid | in_progress | completed | failed")
    price: str = Field(..., description="USDC amount the payment must match")
    input: dict = Field(default_factory=dict)
    output: Optional[dict] = None
    payment_tx_hash: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: str
    paid_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class PaymentRequest(BaseModel):
    """Payment claim for a pending job."""

    tx_hash: str = Field(
        ...,
        min_length=1,
        description="Hash of the USDC transfer paying for the job",
        json_schema_extra={"examples": ["0x" + "ab" * 32]},
    )


class PaymentResponse(BaseModel):
    """Result of payment confirmation."""

    job_id: str
    state: str = Field(..., description="completed | failed, or paid when deferred")
    deferred: bool = Field(
        default=False,
        description="True when a remote provider fulfills the job; poll GET /jobs/{job_id}",
    )
    job: JobResponse
    message: Optional[str] = None


class CompletionRequest(BaseModel):
    """Remote provider callback."""

    status: Literal["in_progress", "completed", "failed"] = Field(..., description="Reported job status")
    output: Optional[dict] = Field(default=None, description="Result object (status=completed)")
    error: Optional[str] = Field(default=None, description="Failure message (status=failed)")


class DeliveryResponse(BaseModel):
    """One tracked webhook delivery."""

    delivery_id: str
    job_id: str
    event: str
    endpoint: str
    state: str = Field(..., description="pending | delivered | failed")
    attempts: int
    last_status: Optional[int] = None
    last_error: Optional[str] = None
    next_retry_at: Optional[str] = None
    created_at: str
    updated_at: str


class DeliveryListResponse(BaseModel):
    """Webhook deliveries for a job."""

    deliveries: List[DeliveryResponse] = Field(default=[])
    total: int


class ServiceResponse(BaseModel):
    """Catalog entry."""

    key: str
    name: str
    description: str
    price: str
    kind: str = Field(..., description="text | image")


class ServiceListResponse(BaseModel):
    """Catalog listing."""

    services: List[ServiceResponse] = Field(default=[])
    total: int
