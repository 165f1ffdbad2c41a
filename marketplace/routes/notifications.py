# marketplace/routes/notifications.py
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query

from marketplace.dependencies import get_marketplace
from marketplace.schemas import (
    NotificationPreferenceResponse,
    NotificationPreferenceUpdate,
    NotificationResponse,
)
from marketplace.services.marketplace import MarketplaceService

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/failed", response_model=List[NotificationResponse])
async def failed_notifications(
    limit: int = Query(default=100, ge=1, le=1000),
    marketplace: MarketplaceService = Depends(get_marketplace),
):
    """Notifications that used up their retries, for manual follow-up."""
    records = await marketplace.failed_notifications(limit)
    return [NotificationResponse.model_validate(record) for record in records]


@router.get("/preferences/{user_id}", response_model=NotificationPreferenceResponse)
async def get_preferences(user_id: int, marketplace: MarketplaceService = Depends(get_marketplace)):
    return NotificationPreferenceResponse.model_validate(await marketplace.notification_preferences(user_id))


@router.put("/preferences/{user_id}", response_model=NotificationPreferenceResponse)
async def update_preferences(
    user_id: int,
    body: NotificationPreferenceUpdate,
    marketplace: MarketplaceService = Depends(get_marketplace),
):
    preference = await marketplace.update_notification_preferences(
        user_id,
        email_enabled=body.email_enabled,
        sms_enabled=body.sms_enabled,
        disabled_types=body.disabled_types,
    )
    return NotificationPreferenceResponse.model_validate(preference)


@router.post("/unsubscribe", response_model=NotificationPreferenceResponse)
async def unsubscribe(
    token: str = Query(..., min_length=1),
    marketplace: MarketplaceService = Depends(get_marketplace),
):
    """Target of the unsubscribe link in outgoing email; turns email off for the token's owner."""
    return NotificationPreferenceResponse.model_validate(await marketplace.unsubscribe(token))
