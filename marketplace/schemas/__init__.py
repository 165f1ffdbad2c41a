# marketplace/schemas/__init__.py
"""
Pydantic schemas for request/response validation and serialization.
"""

from marketplace.schemas.lead import (
    CancelLeadRequest,
    LeadDetail,
    LeadEventResponse,
    LeadRespondRequest,
    LeadResponse,
    PayoutResponse,
    ProposalRequest,
)
from marketplace.schemas.notification import (
    DeliveryAttemptResponse,
    NotificationPreferenceResponse,
    NotificationPreferenceUpdate,
    NotificationResponse,
    NotificationWithAttempts,
)
from marketplace.schemas.service_request import (
    CancelRequest,
    ReassignResponse,
    ServiceRequestCreate,
    ServiceRequestDetail,
    ServiceRequestResponse,
)

__all__ = [
    "CancelLeadRequest",
    "CancelRequest",
    "DeliveryAttemptResponse",
    "LeadDetail",
    "LeadEventResponse",
    "LeadRespondRequest",
    "LeadResponse",
    "NotificationPreferenceResponse",
    "NotificationPreferenceUpdate",
    "NotificationResponse",
    "NotificationWithAttempts",
    "PayoutResponse",
    "ProposalRequest",
    "ReassignResponse",
    "ServiceRequestCreate",
    "ServiceRequestDetail",
    "ServiceRequestResponse",
]
