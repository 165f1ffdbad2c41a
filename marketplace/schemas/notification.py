from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from marketplace.services.state_machine import NotificationStatus


class DeliveryAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    attempt_number: int
    success: bool
    channel: str
    error: Optional[str] = None
    external_id: Optional[str] = None
    created_at: datetime


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    recipient: str
    message_type: str
    channel: str
    subject: str
    user_id: Optional[int] = None
    lead_id: Optional[int] = None
    service_request_id: Optional[int] = None
    status: NotificationStatus
    retry_count: int
    max_retries: int
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    created_at: datetime


class NotificationWithAttempts(NotificationResponse):
    attempts: List[DeliveryAttemptResponse] = Field(default_factory=list)


class NotificationPreferenceUpdate(BaseModel):
    email_enabled: Optional[bool] = None
    sms_enabled: Optional[bool] = None
    disabled_types: Optional[List[str]] = None


class NotificationPreferenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    email_enabled: bool
    sms_enabled: bool
    disabled_types: List[str]
    updated_at: datetime
