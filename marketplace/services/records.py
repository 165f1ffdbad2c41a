from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from marketplace.services.state_machine import (
    LeadStatus,
    NotificationStatus,
    PayoutStatus,
    ServiceRequestStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanTier(str, Enum):
    BASIC = "basic"
    PRO = "pro"
    PREMIUM = "premium"


class ProviderStanding(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class DeclineReason(str, Enum):
    TOO_FAR = "too_far"
    TOO_EXPENSIVE = "too_expensive"
    NOT_RELEVANT = "not_relevant"
    OTHER = "other"


class Decision(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


class _Record:
    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
            elif isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, Decimal):
                data[key] = str(value)
        return data


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class PlanTerms:
    tier: PlanTier = PlanTier.BASIC
    lead_discount_percent: Decimal = Decimal("0")
    priority_boost_points: int = 0
    is_featured: bool = False
    has_advanced_analytics: bool = False
    platform_fee_rate: Optional[Decimal] = None


BASIC_TERMS = PlanTerms()


@dataclass
class SubscriptionRecord(_Record):
    provider_id: int
    terms: PlanTerms
    current_period_end: Optional[datetime] = None
    active: bool = True
    id: Optional[int] = None


@dataclass
class ProviderRecord(_Record):
    id: int
    name: str
    email: str
    category_ids: List[int]
    postal_code: str
    phone: Optional[str] = None
    subcategory_ids: List[int] = field(default_factory=list)
    served_postal_codes: List[str] = field(default_factory=list)
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    service_radius_miles: Optional[float] = None
    rating_average: float = 0.0
    standing: ProviderStanding = ProviderStanding.ACTIVE
    payout_account_id: Optional[str] = None
    billing_customer_id: Optional[str] = None
    billing_payment_method_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def coordinates(self) -> Optional[Coordinates]:
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinates(self.latitude, self.longitude)


@dataclass
class ServiceRequestRecord(_Record):
    customer_id: int
    customer_email: str
    category_id: Optional[int]
    postal_code: str
    title: str
    description: str = ""
    subcategory_id: Optional[int] = None
    city: Optional[str] = None
    customer_phone: Optional[str] = None
    status: ServiceRequestStatus = ServiceRequestStatus.REQUEST_CREATED
    accepted_lead_id: Optional[int] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class LeadRecord(_Record):
    service_request_id: int
    provider_id: int
    category_id: int
    rank_position: int
    score: float
    lead_cost: Decimal
    plan_tier: PlanTier = PlanTier.BASIC
    plan_discount_percent: Decimal = Decimal("0")
    plan_fee_rate: Optional[Decimal] = None
    status: LeadStatus = LeadStatus.CREATED
    decline_reason: Optional[DeclineReason] = None
    decline_note: Optional[str] = None
    cancel_reason: Optional[str] = None
    lead_charge_ref: Optional[str] = None
    lead_charge_attempts: int = 0
    lead_charge_error: Optional[str] = None
    lead_charged_at: Optional[datetime] = None
    agreed_price: Optional[Decimal] = None
    payment_intent_ref: Optional[str] = None
    captured_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    notified_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


@dataclass
class LeadEventRecord(_Record):
    lead_id: int
    from_status: Optional[LeadStatus]
    to_status: LeadStatus
    reason: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PayoutRecord(_Record):
    lead_id: int
    provider_id: int
    total_amount: Decimal
    provider_payout_amount: Decimal
    platform_fee_amount: Decimal
    fee_rate: Decimal
    status: PayoutStatus = PayoutStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    external_transfer_id: Optional[str] = None
    captured_at: Optional[datetime] = None
    processing_at: Optional[datetime] = None
    transferred_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class NotificationRecord(_Record):
    recipient: str
    message_type: str
    channel: str
    subject: str
    payload: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[int] = None
    lead_id: Optional[int] = None
    service_request_id: Optional[int] = None
    status: NotificationStatus = NotificationStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class DeliveryAttemptRecord(_Record):
    notification_id: int
    attempt_number: int
    success: bool
    channel: str
    error: Optional[str] = None
    external_id: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class NotificationPreferenceRecord(_Record):
    """What a user agreed to receive. Users without a record get everything."""

    user_id: int
    email_enabled: bool = True
    sms_enabled: bool = True
    disabled_types: List[str] = field(default_factory=list)
    unsubscribe_token: Optional[str] = None
    id: Optional[int] = None
    updated_at: datetime = field(default_factory=utcnow)

    def allows(self, message_type: str, channel: str) -> bool:
        if channel == "email" and not self.email_enabled:
            return False
        if channel == "sms" and not self.sms_enabled:
            return False
        return message_type not in self.disabled_types
