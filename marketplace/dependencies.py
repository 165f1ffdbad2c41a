# marketplace/dependencies.py
"""
Wiring for the marketplace service graph.

``build_marketplace`` assembles the engine from settings; any collaborator can
be passed in instead, which is how tests swap in fakes. The API, workers and
CLI all share the process-wide instance returned by ``get_marketplace``.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from marketplace.core.config import Settings, settings as default_settings
from marketplace.core.logging import get_structlog_logger
from marketplace.services.channels import Channel, ConsoleChannel, SmtpEmailChannel, WebhookSmsChannel
from marketplace.services.geocoding import Geocoder, NominatimGeocoder, StaticGeocoder
from marketplace.services.lead_lifecycle import LeadLifecycleManager
from marketplace.services.marketplace import MarketplaceService
from marketplace.services.matching_engine import MatchingEngine, RankingWeights
from marketplace.services.memory_store import MemoryStore
from marketplace.services.notification_dispatcher import NotificationDispatcher
from marketplace.services.notification_queue import (
    MemoryNotificationQueue,
    NotificationQueue,
    RedisNotificationQueue,
)
from marketplace.services.payment_processor import (
    PaymentProcessor,
    SandboxPaymentProcessor,
    StripePaymentProcessor,
)
from marketplace.services.payout_engine import PayoutEngine
from marketplace.services.records import utcnow
from marketplace.services.redis import RedisCache, get_redis_client
from marketplace.services.store import Store
from marketplace.services.subscriptions import LeadPricing, SubscriptionRegistry

logger = get_structlog_logger(__name__)

_marketplace: Optional[MarketplaceService] = None
_lock = asyncio.Lock()


def build_store(config: Settings) -> Store:
    if config.store_backend == "postgres":
        from marketplace.services.sql_store import SqlAlchemyStore

        return SqlAlchemyStore()
    return MemoryStore()


def build_channels(config: Settings) -> Dict[str, Channel]:
    channels: Dict[str, Channel] = {}
    if config.email_provider == "smtp" and config.smtp_host:
        channels["email"] = SmtpEmailChannel(
            host=config.smtp_host,
            port=config.smtp_port or (587 if config.smtp_use_tls else 25),
            sender=config.email_from,
            username=config.smtp_username,
            password=config.smtp_password,
            use_tls=config.smtp_use_tls,
            timeout_seconds=config.notification_send_timeout_seconds,
        )
    else:
        channels["email"] = ConsoleChannel("email")

    if config.sms_provider == "webhook" and config.sms_webhook_url:
        channels["sms"] = WebhookSmsChannel(
            url=config.sms_webhook_url,
            secret=config.sms_webhook_secret,
            timeout_seconds=config.notification_send_timeout_seconds,
        )
    else:
        channels["sms"] = ConsoleChannel("sms")
    return channels


def build_processor(config: Settings) -> PaymentProcessor:
    if config.payment_provider == "stripe":
        if not config.stripe_secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required when PAYMENT_PROVIDER=stripe")
        return StripePaymentProcessor(
            api_key=config.stripe_secret_key,
            currency=config.payout_currency,
            timeout_seconds=config.payment_timeout_seconds,
        )
    return SandboxPaymentProcessor()


async def build_queue(config: Settings) -> NotificationQueue:
    if config.queue_backend == "redis":
        return RedisNotificationQueue(await get_redis_client())
    return MemoryNotificationQueue()


async def build_geocoder(config: Settings) -> Geocoder:
    if config.geocoding_provider == "static":
        return StaticGeocoder({})
    cache = None
    if config.queue_backend == "redis":
        cache = RedisCache(await get_redis_client(), prefix="geocode")
    return NominatimGeocoder(
        url=config.geocoding_url,
        country=config.geocoding_country,
        user_agent=config.geocoding_user_agent,
        timeout_seconds=config.geocoding_timeout_seconds,
        cache=cache,
        cache_ttl=config.geocoding_cache_ttl,
    )


async def build_marketplace(
    config: Optional[Settings] = None,
    *,
    store: Optional[Store] = None,
    queue: Optional[NotificationQueue] = None,
    channels: Optional[Dict[str, Channel]] = None,
    geocoder: Optional[Geocoder] = None,
    processor: Optional[PaymentProcessor] = None,
    clock: Callable[[], datetime] = utcnow,
) -> MarketplaceService:
    config = config or default_settings
    store = store or build_store(config)
    queue = queue or await build_queue(config)
    geocoder = geocoder or await build_geocoder(config)
    processor = processor or build_processor(config)
    channels = channels if channels is not None else build_channels(config)

    dispatcher = NotificationDispatcher(
        store,
        queue,
        channels,
        max_retries=config.notification_max_retries,
        backoff_base_seconds=config.notification_backoff_base_seconds,
        send_timeout_seconds=config.notification_send_timeout_seconds,
        lease_seconds=config.notification_lease_seconds,
        eager_delivery=config.notification_eager_delivery,
        frontend_url=config.frontend_url,
        clock=clock,
    )
    payouts = PayoutEngine(
        store,
        processor,
        default_fee_rate=config.platform_fee_rate,
        minimum_fee=config.platform_fee_minimum,
        max_attempts=config.payout_max_attempts,
        retry_delay_seconds=config.payout_retry_delay_seconds,
        notifier=dispatcher,
        clock=clock,
    )
    matching = MatchingEngine(
        store,
        geocoder,
        SubscriptionRegistry(),
        LeadPricing(
            base_cost=config.lead_base_cost,
            minimum_cost=config.lead_min_cost,
            category_pricing=config.category_pricing(),
        ),
        weights=RankingWeights(
            base_score=config.ranking_base_score,
            subcategory_bonus=config.ranking_subcategory_bonus,
            rating_weight=config.ranking_rating_weight,
            featured_bonus=config.ranking_featured_bonus,
            recent_lead_penalty=config.ranking_recent_lead_penalty,
        ),
        top_n=config.matching_top_n,
        recent_window=timedelta(hours=config.ranking_recent_window_hours),
        default_radius_miles=config.default_service_radius_miles,
    )
    lifecycle = LeadLifecycleManager(
        store,
        dispatcher,
        payouts,
        exclusive_acceptance=config.exclusive_acceptance,
        frontend_url=config.frontend_url,
        processor=processor,
        charge_lead_cost=config.lead_charge_enabled,
        clock=clock,
    )
    logger.info(
        "marketplace.built",
        store=type(store).__name__,
        queue=type(queue).__name__,
        geocoder=type(geocoder).__name__,
        processor=type(processor).__name__,
        channels=sorted(channels),
    )
    return MarketplaceService(
        store,
        matching,
        lifecycle,
        payouts,
        dispatcher,
        processor,
        stale_after=timedelta(hours=config.stale_request_hours),
        clock=clock,
    )


async def get_marketplace() -> MarketplaceService:
    """FastAPI dependency returning the shared marketplace instance."""
    global _marketplace
    if _marketplace is None:
        async with _lock:
            if _marketplace is None:
                _marketplace = await build_marketplace()
    return _marketplace


def set_marketplace(marketplace: Optional[MarketplaceService]) -> None:
    global _marketplace
    _marketplace = marketplace


async def close_marketplace() -> None:
    global _marketplace
    if _marketplace is None:
        return
    await _marketplace.dispatcher.drain()
    await _marketplace.store.close()
    _marketplace = None
