# marketplace/models/__init__.py
"""
SQLAlchemy ORM models for database entities.
"""

from marketplace.models.lead import Lead, LeadEvent
from marketplace.models.notification import DeliveryAttempt, NotificationAudit, NotificationPreference
from marketplace.models.payout import Payout
from marketplace.models.provider import Provider, Subscription
from marketplace.models.service_request import ServiceRequest

__all__ = [
    "DeliveryAttempt",
    "Lead",
    "LeadEvent",
    "NotificationAudit",
    "NotificationPreference",
    "Payout",
    "Provider",
    "ServiceRequest",
    "Subscription",
]
