# marketplace/routes/health.py
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from marketplace import __version__
from marketplace.core.config import settings
from marketplace.core.logging import get_structlog_logger
from marketplace.dependencies import get_marketplace
from marketplace.services.marketplace import MarketplaceService

logger = get_structlog_logger(__name__)

router = APIRouter(tags=["health"])

_started = time.monotonic()


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    environment: str
    version: str
    timestamp: str
    uptime: float
    checks: Dict[str, Dict[str, Any]]


async def check_redis() -> Dict[str, Any]:
    if settings.queue_backend != "redis":
        return {"status": "skipped"}
    from marketplace.services.redis import health_check as redis_health_check

    return await redis_health_check()


@router.get("/health", response_model=HealthCheckResponse)
async def health(marketplace: MarketplaceService = Depends(get_marketplace)):
    checks = {
        "store": await marketplace.store.health_check(),
        "redis": await check_redis(),
    }
    healthy = all(check.get("status") in ("healthy", "skipped") for check in checks.values())
    body = HealthCheckResponse(
        status="healthy" if healthy else "unhealthy",
        service="marketplace",
        environment=settings.environment,
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime=round(time.monotonic() - _started, 3),
        checks=checks,
    )
    if not healthy:
        logger.warning("health.unhealthy", checks=checks)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body.model_dump())
    return body
