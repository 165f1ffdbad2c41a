# marketplace/services/__init__.py
"""
Domain services: matching, lead lifecycle, payouts and notifications.

Only the status enums are re-exported; import the engines from their
own modules.
"""

from marketplace.services.state_machine import (
    LeadStatus,
    NotificationStatus,
    PayoutStatus,
    ServiceRequestStatus,
)

__all__ = [
    "LeadStatus",
    "NotificationStatus",
    "PayoutStatus",
    "ServiceRequestStatus",
]
