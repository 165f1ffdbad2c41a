# marketplace/main.py
from __future__ import annotations

import time
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from marketplace import __version__
from marketplace.core.config import settings
from marketplace.core.exceptions import APIError, BaseAPIException, ValidationError
from marketplace.core.logging import configure_structlog, get_structlog_logger
from marketplace.dependencies import close_marketplace, get_marketplace
from marketplace.middleware import LoggingMiddleware, RequestIdMiddleware
from marketplace.routes import (
    health_router,
    leads_router,
    notifications_router,
    service_requests_router,
)
from marketplace.services.redis import close_redis_pool, init_redis_pool


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    logger = get_structlog_logger(__name__)
    logger.info("application.starting", environment=settings.environment)

    if settings.queue_backend == "redis":
        try:
            await init_redis_pool()
        except BaseAPIException as e:
            logger.error("redis.connection_failed", error=e.message)
            if settings.is_production:
                raise

    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            integrations=[
                AsyncioIntegration(),
                FastApiIntegration(),
                StarletteIntegration(),
            ],
            traces_sample_rate=1.0 if settings.is_development else 0.1,
            send_default_pii=False,
        )
        logger.info("sentry.initialized")

    await get_marketplace()
    logger.info("application.started")
    yield

    logger.info("application.shutting_down")
    await close_marketplace()
    if settings.queue_backend == "redis":
        await close_redis_pool()
    logger.info("application.shutdown_complete")


# Configure logging before creating app
configure_structlog()
logger = get_structlog_logger(__name__)

app = FastAPI(
    title="Services Marketplace API",
    version=__version__,
    description="Lead distribution, lifecycle, payouts and notifications for a services marketplace",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.origins(),
    allow_credentials=True,
    allow_methods=settings.methods(),
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)
# Added last so it runs first and the logging middleware sees the id
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIdMiddleware)


@app.exception_handler(BaseAPIException)
async def api_exception_handler(request: Request, exc: BaseAPIException):
    """Handle marketplace errors."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "api.exception",
        status_code=exc.status_code,
        code=exc.code,
        path=request.url.path,
        method=request.method,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    errors = [
        {
            "loc": list(error.get("loc", [])),
            "msg": error.get("msg", "Validation error"),
            "type": error.get("type", "value_error"),
        }
        for error in exc.errors()
    ]
    logger.warning("validation.error", path=request.url.path, method=request.method, errors=errors)
    error = ValidationError("Request validation failed", code="validation_error", details={"errors": errors})
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=error.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    error_id = f"err_{int(time.time())}_{hash(str(exc)) % 10000:04d}"
    logger.error(
        "unhandled.exception",
        error_id=error_id,
        error_type=type(exc).__name__,
        error=str(exc),
        path=request.url.path,
        method=request.method,
        exc_info=exc,
    )
    message = f"Internal server error: {exc}" if settings.is_development else "Internal server error"
    error = APIError(message, code="internal_error", details={"error_id": error_id})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error.to_dict(),
        headers={"X-Error-ID": error_id},
    )


app.include_router(health_router, prefix=settings.api_prefix)
app.include_router(service_requests_router, prefix=settings.api_prefix)
app.include_router(leads_router, prefix=settings.api_prefix)
app.include_router(notifications_router, prefix=settings.api_prefix)

if not settings.is_testing:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Services Marketplace API",
        "version": app.version,
        "environment": settings.environment,
        "docs": "/docs" if settings.is_development else None,
        "health": f"{settings.api_prefix}/health",
    }


logger.info("application.configured", environment=settings.environment)
