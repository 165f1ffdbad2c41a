# marketplace/routes/__init__.py
"""
API route handlers organized by domain.
"""

from marketplace.routes.health import router as health_router
from marketplace.routes.leads import router as leads_router
from marketplace.routes.notifications import router as notifications_router
from marketplace.routes.service_requests import router as service_requests_router

__all__ = [
    "health_router",
    "leads_router",
    "notifications_router",
    "service_requests_router",
]
