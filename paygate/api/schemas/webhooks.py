"""
Webhook registration schemas.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class WebhookRegisterRequest(BaseModel):
    """Register or replace a counterparty endpoint."""

    provider: str = Field(..., description="Counterparty wallet address")
    url: str = Field(..., description="HTTPS URL receiving signed job events")
    events: Optional[List[str]] = Field(
        default=None,
        description="Subscribed events: job.paid, job.completed, job.failed (default: all)",
    )
    remote_fulfillment: bool = Field(
        default=False,
        description="Counterparty performs the work and reports via POST /jobs/{job_id}/complete",
    )


class WebhookRegisterResponse(BaseModel):
    """
    Registered endpoint.

    secret and api_key are only returned here; re-register to rotate them.
    """

    provider: str
    url: str
    events: List[str]
    remote_fulfillment: bool
    secret: str = Field(..., description="HMAC-SHA256 key for X-Paygate-Signature")
    api_key: str = Field(..., description="Key to present as X-Provider-Key on callbacks")
    created_at: str
    updated_at: str
