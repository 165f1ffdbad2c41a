# marketplace/middleware/__init__.py
"""
HTTP middleware for request ids and request logging.
"""

from marketplace.middleware.logging import LoggingMiddleware
from marketplace.middleware.request_id import RequestIdMiddleware

__all__ = ["LoggingMiddleware", "RequestIdMiddleware"]
