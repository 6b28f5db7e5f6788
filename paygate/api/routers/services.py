"""
Services router.

- GET /services - Catalog listing with prices
"""

from fastapi import APIRouter

from paygate.pipeline.catalog import list_entries

from ..schemas.jobs import ServiceListResponse, ServiceResponse

router = APIRouter()


@router.get("", response_model=ServiceListResponse)
async def list_services():
    """List purchasable services."""
    services = [ServiceResponse(**entry.to_dict()) for entry in list_entries()]
    return ServiceListResponse(services=services, total=len(services))
