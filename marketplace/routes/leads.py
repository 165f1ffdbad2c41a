# marketplace/routes/leads.py
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends

from marketplace.core.exceptions import BaseAPIException
from marketplace.core.logging import get_structlog_logger
from marketplace.dependencies import get_marketplace
from marketplace.schemas import (
    CancelLeadRequest,
    DeliveryAttemptResponse,
    LeadDetail,
    LeadEventResponse,
    LeadRespondRequest,
    LeadResponse,
    NotificationWithAttempts,
    NotificationResponse,
    PayoutResponse,
    ProposalRequest,
)
from marketplace.services.marketplace import MarketplaceService

logger = get_structlog_logger(__name__)

router = APIRouter(prefix="/leads", tags=["leads"])


async def process_payout_in_background(marketplace: MarketplaceService, lead_id: int) -> None:
    try:
        await marketplace.process_payout(lead_id)
    except BaseAPIException as e:
        # The payout worker retries whatever is still pending or failed
        logger.warning("payout.background_failed", lead_id=lead_id, code=e.code, error=e.message)


@router.get("/{lead_id}", response_model=LeadDetail)
async def get_lead(lead_id: int, marketplace: MarketplaceService = Depends(get_marketplace)):
    lead, events = await marketplace.lead_with_events(lead_id)
    return LeadDetail(
        **LeadResponse.model_validate(lead).model_dump(),
        history=[LeadEventResponse.model_validate(event) for event in events],
    )


@router.post("/{lead_id}/view", response_model=LeadResponse)
async def view_lead(lead_id: int, marketplace: MarketplaceService = Depends(get_marketplace)):
    return LeadResponse.model_validate(await marketplace.view_lead(lead_id))


@router.post("/{lead_id}/respond", response_model=LeadResponse)
async def respond_to_lead(
    lead_id: int,
    payload: LeadRespondRequest,
    marketplace: MarketplaceService = Depends(get_marketplace),
):
    lead = await marketplace.respond_to_lead(lead_id, payload.decision, reason=payload.reason, note=payload.note)
    return LeadResponse.model_validate(lead)


@router.post("/{lead_id}/start", response_model=LeadResponse)
async def start_work(lead_id: int, marketplace: MarketplaceService = Depends(get_marketplace)):
    return LeadResponse.model_validate(await marketplace.mark_in_progress(lead_id))


@router.post("/{lead_id}/complete", response_model=LeadResponse)
async def complete_work(lead_id: int, marketplace: MarketplaceService = Depends(get_marketplace)):
    return LeadResponse.model_validate(await marketplace.mark_completed(lead_id))


@router.post("/{lead_id}/proposal", response_model=LeadResponse)
async def accept_proposal(
    lead_id: int,
    payload: ProposalRequest,
    marketplace: MarketplaceService = Depends(get_marketplace),
):
    """Capture the customer's payment and fix the agreed price for the job."""
    lead = await marketplace.accept_proposal(lead_id, payload.amount, payload.payment_intent_ref)
    return LeadResponse.model_validate(lead)


@router.post("/{lead_id}/approve", response_model=PayoutResponse)
async def approve_work(
    lead_id: int,
    background_tasks: BackgroundTasks,
    marketplace: MarketplaceService = Depends(get_marketplace),
):
    """
    Approve completed work. Creates the payout exactly once; repeated
    approvals return the existing payout.
    """
    payout = await marketplace.approve_lead(lead_id)
    background_tasks.add_task(process_payout_in_background, marketplace, lead_id)
    return PayoutResponse.model_validate(payout)


@router.post("/{lead_id}/cancel", response_model=LeadResponse)
async def cancel_lead(
    lead_id: int,
    payload: Optional[CancelLeadRequest] = None,
    marketplace: MarketplaceService = Depends(get_marketplace),
):
    reason = (payload.reason if payload else None) or "cancelled"
    return LeadResponse.model_validate(await marketplace.cancel_lead(lead_id, reason))


@router.get("/{lead_id}/payout", response_model=PayoutResponse)
async def get_payout(lead_id: int, marketplace: MarketplaceService = Depends(get_marketplace)):
    return PayoutResponse.model_validate(await marketplace.get_payout(lead_id))


@router.get("/{lead_id}/notifications", response_model=List[NotificationWithAttempts])
async def lead_notifications(lead_id: int, marketplace: MarketplaceService = Depends(get_marketplace)):
    results = []
    for record, attempts in await marketplace.lead_notifications(lead_id):
        results.append(
            NotificationWithAttempts(
                **NotificationResponse.model_validate(record).model_dump(),
                attempts=[DeliveryAttemptResponse.model_validate(attempt) for attempt in attempts],
            )
        )
    return results
