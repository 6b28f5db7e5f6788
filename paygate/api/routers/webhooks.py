"""
Webhooks router.

- POST /webhooks - Register or replace a counterparty endpoint
"""

from typing import Optional

from fastapi import APIRouter, Depends

from paygate.pipeline.errors import PipelineError

from .._pipeline_state import get_orchestrator
from ..dependencies.auth import operator_access, optional_provider_key
from ..errors import to_http_exception
from ..schemas.jobs import ErrorResponse
from ..schemas.webhooks import WebhookRegisterRequest, WebhookRegisterResponse

router = APIRouter()


@router.post(
    "",
    response_model=WebhookRegisterResponse,
    status_code=201,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid provider, URL or events"},
        401: {"model": ErrorResponse, "description": "Operator key or current X-Provider-Key required"},
    },
)
async def register_webhook(
    request: WebhookRegisterRequest,
    operator: bool = Depends(operator_access),
    provider_key: Optional[str] = Depends(optional_provider_key),
):
    """
    Register a counterparty endpoint.

    A new provider (and the platform wallet) is registered by the
    operator with X-API-Key. Re-registering an existing provider needs
    the operator key or its current X-Provider-Key; it replaces the URL
    and events and rotates the signing secret and API key.
    """
    orchestrator = get_orchestrator()

    try:
        endpoint = orchestrator.register_webhook(
            provider=request.provider,
            url=request.url,
            events=request.events,
            remote_fulfillment=request.remote_fulfillment,
            provider_key=provider_key,
            operator=operator,
        )
    except PipelineError as e:
        raise to_http_exception(e)

    return WebhookRegisterResponse(
        provider=endpoint.provider,
        url=endpoint.url,
        events=endpoint.events,
        remote_fulfillment=endpoint.remote_fulfillment,
        secret=endpoint.secret,
        api_key=endpoint.api_key,
        created_at=endpoint.created_at,
        updated_at=endpoint.updated_at,
    )
