from decimal import Decimal

import pytest
from pydantic import ValidationError

from marketplace.core.config import Settings
from marketplace.dependencies import build_channels, build_geocoder, build_processor, build_store
from marketplace.services.channels import ConsoleChannel, SmtpEmailChannel, WebhookSmsChannel
from marketplace.services.geocoding import NominatimGeocoder, StaticGeocoder
from marketplace.services.memory_store import MemoryStore
from marketplace.services.payment_processor import SandboxPaymentProcessor, StripePaymentProcessor


@pytest.fixture
def env(monkeypatch):
    def apply(**values):
        for key, value in values.items():
            monkeypatch.setenv(key, value)
        return Settings(_env_file=None)

    return apply


def test_defaults(env):
    config = env()
    assert config.is_testing
    assert config.platform_fee_rate == Decimal("0.10")
    assert config.matching_top_n == 3
    assert config.notification_max_retries == 3
    assert config.exclusive_acceptance is True
    assert config.lead_charge_enabled is True


def test_worker_batch_sizes_are_independent(env):
    config = env(PAYOUT_BATCH_SIZE="25", NOTIFICATION_BATCH_SIZE="500")
    assert config.payout_batch_size == 25
    assert config.notification_batch_size == 500
    with pytest.raises(ValidationError):
        env(PAYOUT_BATCH_SIZE="0")


def test_category_pricing(env):
    config = env(LEAD_CATEGORY_PRICING="1:25.00, 4:12.50,")
    assert config.category_pricing() == {1: Decimal("25.00"), 4: Decimal("12.50")}


def test_origins_and_methods(env):
    assert env(ALLOWED_ORIGINS="*").origins() == ["*"]
    config = env(ALLOWED_ORIGINS="https://a.example, https://b.example", ALLOWED_METHODS="GET, POST")
    assert config.origins() == ["https://a.example", "https://b.example"]
    assert config.methods() == ["GET", "POST"]


def test_log_level_is_normalised(env):
    assert env(LOG_LEVEL="debug").log_level == "DEBUG"


@pytest.mark.parametrize(
    "key,value",
    [
        ("ENVIRONMENT", "qa"),
        ("LOG_LEVEL", "loud"),
        ("STORE_BACKEND", "sqlite"),
        ("PAYMENT_PROVIDER", "paypal"),
        ("PLATFORM_FEE_RATE", "1.5"),
        ("MATCHING_TOP_N", "0"),
    ],
)
def test_invalid_values_are_rejected(env, key, value):
    with pytest.raises(ValidationError):
        env(**{key: value})


def test_memory_backends(env):
    config = env()
    assert isinstance(build_store(config), MemoryStore)
    assert isinstance(build_processor(config), SandboxPaymentProcessor)
    channels = build_channels(config)
    assert isinstance(channels["email"], ConsoleChannel)
    assert isinstance(channels["sms"], ConsoleChannel)


def test_configured_channels(env):
    config = env(
        EMAIL_PROVIDER="smtp",
        SMTP_HOST="smtp.example.com",
        SMS_PROVIDER="webhook",
        SMS_WEBHOOK_URL="https://sms.example.com/send",
    )
    channels = build_channels(config)
    assert isinstance(channels["email"], SmtpEmailChannel)
    assert channels["email"].port == 587
    assert isinstance(channels["sms"], WebhookSmsChannel)


def test_stripe_requires_key(env):
    with pytest.raises(ValueError):
        build_processor(env(PAYMENT_PROVIDER="stripe"))
    processor = build_processor(env(PAYMENT_PROVIDER="stripe", STRIPE_SECRET_KEY="sk_test_123"))
    assert isinstance(processor, StripePaymentProcessor)


@pytest.mark.asyncio
async def test_geocoder_selection(env):
    assert isinstance(await build_geocoder(env()), StaticGeocoder)
    geocoder = await build_geocoder(env(GEOCODING_PROVIDER="nominatim"))
    assert isinstance(geocoder, NominatimGeocoder)
    assert geocoder.cache is None
