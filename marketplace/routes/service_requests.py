# marketplace/routes/service_requests.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, status

from marketplace.core.logging import get_structlog_logger
from marketplace.dependencies import get_marketplace
from marketplace.schemas import (
    CancelRequest,
    LeadResponse,
    ReassignResponse,
    ServiceRequestCreate,
    ServiceRequestDetail,
    ServiceRequestResponse,
)
from marketplace.services.marketplace import MarketplaceService, ServiceRequestInput

logger = get_structlog_logger(__name__)

router = APIRouter(prefix="/service-requests", tags=["service-requests"])


async def _detail(marketplace: MarketplaceService, service_request_id: int) -> ServiceRequestDetail:
    request, leads = await marketplace.service_request_with_leads(service_request_id)
    return ServiceRequestDetail(
        **ServiceRequestResponse.model_validate(request).model_dump(),
        leads=[LeadResponse.model_validate(lead) for lead in leads],
    )


@router.post("", response_model=ServiceRequestDetail, status_code=status.HTTP_201_CREATED)
async def create_service_request(
    payload: ServiceRequestCreate,
    marketplace: MarketplaceService = Depends(get_marketplace),
):
    """Record a customer request and distribute it to the best matching providers."""
    request = await marketplace.create_service_request(ServiceRequestInput(**payload.model_dump()))
    return await _detail(marketplace, request.id)


@router.get("/{service_request_id}", response_model=ServiceRequestDetail)
async def get_service_request(
    service_request_id: int,
    marketplace: MarketplaceService = Depends(get_marketplace),
):
    return await _detail(marketplace, service_request_id)


@router.post("/{service_request_id}/cancel", response_model=ServiceRequestDetail)
async def cancel_service_request(
    service_request_id: int,
    payload: Optional[CancelRequest] = None,
    marketplace: MarketplaceService = Depends(get_marketplace),
):
    reason = (payload.reason if payload else None) or "request_cancelled"
    await marketplace.cancel_service_request(service_request_id, reason)
    return await _detail(marketplace, service_request_id)


@router.post("/{service_request_id}/reassign", response_model=ReassignResponse)
async def reassign_service_request(
    service_request_id: int,
    marketplace: MarketplaceService = Depends(get_marketplace),
):
    """Offer an unaccepted request to providers who have not seen it yet."""
    leads = await marketplace.reassign_providers(service_request_id)
    return ReassignResponse(service_request_id=service_request_id, lead_ids=[lead.id for lead in leads])
