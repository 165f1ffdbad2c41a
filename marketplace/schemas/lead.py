from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from marketplace.services.records import DeclineReason, Decision, PlanTier
from marketplace.services.state_machine import LeadStatus, PayoutStatus


class LeadResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    service_request_id: int
    provider_id: int
    category_id: int
    rank_position: int
    score: float
    lead_cost: Decimal
    plan_tier: PlanTier
    status: LeadStatus
    decline_reason: Optional[DeclineReason] = None
    decline_note: Optional[str] = None
    cancel_reason: Optional[str] = None
    agreed_price: Optional[Decimal] = None
    lead_charge_ref: Optional[str] = None
    lead_charge_error: Optional[str] = None
    lead_charged_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    notified_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class LeadEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: Optional[LeadStatus] = None
    to_status: LeadStatus
    reason: Optional[str] = None
    created_at: datetime


class LeadDetail(LeadResponse):
    history: List[LeadEventResponse] = Field(default_factory=list)


class LeadRespondRequest(BaseModel):
    decision: Decision
    reason: Optional[DeclineReason] = None
    note: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def check_decline_reason(self):
        if self.decision == Decision.DECLINE and self.reason is None:
            raise ValueError("reason is required when declining a lead")
        return self


class ProposalRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    payment_intent_ref: str = Field(..., min_length=1, max_length=200)


class CancelLeadRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=200)


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int
    provider_id: int
    total_amount: Decimal
    provider_payout_amount: Decimal
    platform_fee_amount: Decimal
    fee_rate: Decimal
    status: PayoutStatus
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    external_transfer_id: Optional[str] = None
    transferred_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    created_at: datetime
