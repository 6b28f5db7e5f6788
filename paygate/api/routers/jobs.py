"""
Jobs router for the payment-gated job API.

- POST /jobs - Create a pending job priced from the catalog
- GET /jobs/{job_id} - Poll job state and result
- POST /jobs/{job_id}/pay - Confirm payment (verifies on-chain, then executes)
- POST /jobs/{job_id}/complete - Remote provider callback (X-Provider-Key)
- GET /jobs/{job_id}/deliveries - Webhook delivery history
"""

import logging

from fastapi import APIRouter, Depends

from paygate.pipeline.entities import DeliveryAttempt, Job
from paygate.pipeline.errors import PipelineError

from .._pipeline_state import get_orchestrator
from ..dependencies.auth import require_provider_key
from ..errors import internal_error, to_http_exception
from ..schemas.jobs import (
    CompletionRequest,
    DeliveryListResponse,
    DeliveryResponse,
    ErrorResponse,
    JobCreateRequest,
    JobResponse,
    PaymentRequest,
    PaymentResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request or payment verification failed"},
    404: {"model": ErrorResponse, "description": "Job not found"},
    409: {"model": ErrorResponse, "description": "Job already advanced or payment reused"},
}


def _job_to_response(job: Job) -> JobResponse:
    """Convert Job entity to API response."""
    return JobResponse(**job.to_dict())


def _delivery_to_response(delivery: DeliveryAttempt) -> DeliveryResponse:
    """Convert DeliveryAttempt entity to API response."""
    return DeliveryResponse(
        delivery_id=delivery.delivery_id,
        job_id=delivery.job_id,
        event=delivery.event,
        endpoint=delivery.endpoint,
        state=delivery.state.value,
        attempts=delivery.attempts,
        last_status=delivery.last_status,
        last_error=delivery.last_error,
        next_retry_at=delivery.next_retry_at,
        created_at=delivery.created_at,
        updated_at=delivery.updated_at,
    )


@router.post("", response_model=JobResponse, status_code=201, responses=ERROR_RESPONSES)
async def create_job(request: JobCreateRequest):
    """
    Create a pending job.

    The price is copied from the catalog entry and is the exact USDC
    amount the payment must transfer to the job's provider address.
    """
    orchestrator = get_orchestrator()

    try:
        job = orchestrator.create_job(
            service_key=request.service_key,
            requester=request.requester,
            input_data=request.input,
            provider=request.provider,
        )
    except PipelineError as e:
        raise to_http_exception(e)

    return _job_to_response(job)


@router.get("/{job_id}", response_model=JobResponse, responses=ERROR_RESPONSES)
async def get_job(job_id: str):
    """Get a job by ID, including its output once terminal."""
    orchestrator = get_orchestrator()

    try:
        job = orchestrator.get_job(job_id)
    except PipelineError as e:
        raise to_http_exception(e)

    return _job_to_response(job)


@router.post("/{job_id}/pay", response_model=PaymentResponse, responses=ERROR_RESPONSES)
async def confirm_payment(job_id: str, request: PaymentRequest):
    """
    Confirm payment for a pending job.

    - 200: job completed or failed (local provider), or paid and
      deferred to a remote provider
    - 400 PAYMENT_VERIFICATION_FAILED: claim rejected, job stays pending
    - 404: unknown job
    - 409 CONFLICT: job already paid, or transaction already used
    """
    orchestrator = get_orchestrator()

    try:
        outcome = await orchestrator.confirm_payment(job_id, request.tx_hash)
    except PipelineError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Payment confirmation failed for job {job_id}: {e}", exc_info=True)
        raise internal_error("confirm payment")

    job = outcome.job
    if outcome.deferred:
        message = "Payment verified; awaiting remote provider"
    elif job.failure_reason:
        message = f"Job failed: {job.failure_reason}"
    else:
        message = "Job completed"

    return PaymentResponse(
        job_id=job.job_id,
        state=job.state.value,
        deferred=outcome.deferred,
        job=_job_to_response(job),
        message=message,
    )


@router.post("/{job_id}/complete", response_model=JobResponse, responses=ERROR_RESPONSES)
async def complete_job(
    job_id: str,
    request: CompletionRequest,
    provider_key: str = Depends(require_provider_key),
):
    """
    Remote provider callback.

    Report in_progress, completed (with output) or failed (with error).
    A second terminal report for the same job is rejected with 409.
    """
    orchestrator = get_orchestrator()

    try:
        job = orchestrator.record_remote_result(
            job_id,
            provider_key,
            status=request.status,
            output=request.output,
            error=request.error,
        )
    except PipelineError as e:
        raise to_http_exception(e)

    return _job_to_response(job)


@router.get("/{job_id}/deliveries", response_model=DeliveryListResponse, responses=ERROR_RESPONSES)
async def list_deliveries(job_id: str):
    """Webhook deliveries recorded for a job, oldest first."""
    orchestrator = get_orchestrator()

    try:
        deliveries = orchestrator.list_deliveries(job_id)
    except PipelineError as e:
        raise to_http_exception(e)

    return DeliveryListResponse(
        deliveries=[_delivery_to_response(d) for d in deliveries],
        total=len(deliveries),
    )
