# marketplace/middleware/logging.py
from __future__ import annotations

import time
from typing import Mapping, Optional

from fastapi import Request
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware

from marketplace.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)

SKIP_PATHS = ("/api/health", "/metrics")
SENSITIVE_HEADERS = ("authorization", "cookie", "x-api-key", "secret", "token", "password")


def filter_headers(headers: Mapping[str, str]) -> dict:
    filtered = {}
    for key, value in headers.items():
        if any(sensitive in key.lower() for sensitive in SENSITIVE_HEADERS):
            filtered[key] = "[REDACTED]"
        else:
            filtered[key] = value
    return filtered


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        request_id: Optional[str] = getattr(request.state, "request_id", None)

        if request.url.path not in SKIP_PATHS:
            logger.info(
                "request.received",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                query_params=dict(request.query_params) or None,
                client_ip=request.client.host if request.client else "unknown",
                headers=filter_headers(request.headers),
            )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request.exception",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                response_time_ms=(time.perf_counter() - start_time) * 1000,
                exception_type=type(e).__name__,
                exception_message=str(e),
            )
            raise

        response_time = time.perf_counter() - start_time
        response.headers["X-Response-Time"] = f"{response_time:.3f}"
        self._log_response(request, response, response_time, request_id)
        return response

    def _log_response(
        self,
        request: Request,
        response: Response,
        response_time: float,
        request_id: Optional[str],
    ) -> None:
        if request.url.path in SKIP_PATHS:
            return

        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "response_time_ms": response_time * 1000,
        }
        if response.status_code >= 500:
            logger.error("response.sent", error_type="server_error", **log_data)
        elif response.status_code >= 400:
            logger.warning("response.sent", error_type="client_error", **log_data)
        else:
            logger.info("response.sent", **log_data)
