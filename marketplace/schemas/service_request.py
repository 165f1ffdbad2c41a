from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from marketplace.schemas.lead import LeadResponse
from marketplace.services.geocoding import clean_postal_code
from marketplace.services.state_machine import ServiceRequestStatus


class ServiceRequestCreate(BaseModel):
    customer_id: int = Field(..., ge=1)
    customer_email: EmailStr
    customer_phone: Optional[str] = Field(default=None, max_length=20)
    category_id: Optional[int] = Field(default=None, ge=1)
    subcategory_id: Optional[int] = Field(default=None, ge=1)
    postal_code: str = Field(..., min_length=3, max_length=16)
    city: Optional[str] = Field(default=None, max_length=128)
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)

    @field_validator("postal_code")
    @classmethod
    def validate_postal_code(cls, v: str) -> str:
        cleaned = clean_postal_code(v)
        if cleaned is None:
            raise ValueError("postal_code must contain at least 5 characters")
        return cleaned


class ServiceRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: int
    category_id: Optional[int]
    subcategory_id: Optional[int] = None
    postal_code: str
    city: Optional[str] = None
    title: str
    description: str = ""
    status: ServiceRequestStatus
    accepted_lead_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class ServiceRequestDetail(ServiceRequestResponse):
    leads: List[LeadResponse] = Field(default_factory=list)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=200)


class ReassignResponse(BaseModel):
    service_request_id: int
    lead_ids: List[int]
