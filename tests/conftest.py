import os

# Settings are read at import time
os.environ["ENVIRONMENT"] = "testing"
os.environ["STORE_BACKEND"] = "memory"
os.environ["QUEUE_BACKEND"] = "memory"
os.environ["GEOCODING_PROVIDER"] = "static"
os.environ["PAYMENT_PROVIDER"] = "sandbox"
os.environ["NOTIFICATION_EAGER_DELIVERY"] = "false"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from marketplace.core.config import settings
from marketplace.core.exceptions import DeliveryFailure, ExternalPaymentError
from marketplace.dependencies import build_marketplace
from marketplace.services.channels import SendReceipt
from marketplace.services.geocoding import StaticGeocoder
from marketplace.services.marketplace import ServiceRequestInput
from marketplace.services.memory_store import MemoryStore
from marketplace.services.notification_queue import MemoryNotificationQueue
from marketplace.services.payment_processor import CaptureOutcome
from marketplace.services.records import (
    PlanTerms,
    ProviderRecord,
    SubscriptionRecord,
    utcnow,
)

# Downtown Austin and two points around it
GEO_TABLE = {
    "78701": (30.2711, -97.7437),
    "78702": (30.2636, -97.7140),
    "78660": (30.4394, -97.6200),
    "10001": (40.7506, -73.9972),
}


class FakeClock:
    def __init__(self, start=None):
        self.now = start or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeChannel:
    """Channel whose outcomes are scripted: each entry is ``None`` (success) or an exception."""

    def __init__(self, name: str = "email", outcomes: Optional[List[Any]] = None, always_fail: bool = False):
        self.name = name
        self.outcomes = list(outcomes or [])
        self.always_fail = always_fail
        self.sent: List[Dict[str, Any]] = []
        self.calls = 0

    async def send(self, recipient, message):
        self.calls += 1
        if self.always_fail:
            raise DeliveryFailure("smtp unavailable")
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if outcome is not None:
                raise outcome
        self.sent.append({"recipient": recipient, "subject": message.subject, "body": message.body})
        return SendReceipt(channel=self.name, external_id=f"msg-{self.calls}")


class FakePaymentProcessor:
    def __init__(self, fail_transfers: int = 0, fail_charges: int = 0):
        self.fail_transfers = fail_transfers
        self.fail_charges = fail_charges
        self.captures: List[str] = []
        self.charges: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.transfers: List[Dict[str, Any]] = []

    async def capture(self, payment_intent_ref: str) -> CaptureOutcome:
        self.captures.append(payment_intent_ref)
        return CaptureOutcome(payment_intent_ref=payment_intent_ref, captured=True)

    async def charge(self, amount, customer_ref, payment_method_ref, idempotency_key, metadata=None) -> str:
        if self.fail_charges > 0:
            self.fail_charges -= 1
            raise ExternalPaymentError("Your card was declined.")
        self.charges.append(
            {"amount": amount, "customer": customer_ref, "idempotency_key": idempotency_key}
        )
        return f"pi_charge_{len(self.charges)}"

    async def refund(self, payment_intent_ref, idempotency_key) -> str:
        self.refunds.append({"payment_intent": payment_intent_ref, "idempotency_key": idempotency_key})
        return f"re_{len(self.refunds)}"

    async def transfer(self, amount, destination_account, idempotency_key, metadata=None) -> str:
        if self.fail_transfers > 0:
            self.fail_transfers -= 1
            raise ExternalPaymentError("card_declined")
        self.transfers.append(
            {"amount": amount, "destination": destination_account, "idempotency_key": idempotency_key}
        )
        return f"tr_{len(self.transfers)}"


class _RecordingTransaction:
    def __init__(self, tx, calls: List[str]):
        self._tx = tx
        self._calls = calls

    def __getattr__(self, name):
        method = getattr(self._tx, name)

        async def call(*args, **kwargs):
            self._calls.append(name)
            return await method(*args, **kwargs)

        return call


class RecordingStore(MemoryStore):
    """Memory store that keeps the ordered store calls of every transaction."""

    def __init__(self):
        super().__init__()
        self.transactions: List[List[str]] = []

    @asynccontextmanager
    async def transaction(self):
        async with super().transaction() as tx:
            calls: List[str] = []
            self.transactions.append(calls)
            yield _RecordingTransaction(tx, calls)


def make_provider(provider_id: int, **overrides) -> ProviderRecord:
    data = dict(
        id=provider_id,
        name=f"Provider {provider_id}",
        email=f"provider{provider_id}@example.com",
        category_ids=[1],
        postal_code="78701",
        latitude=30.2711,
        longitude=-97.7437,
        service_radius_miles=25.0,
        payout_account_id=f"acct_{provider_id}",
        billing_customer_id=f"cus_{provider_id}",
        billing_payment_method_id=f"pm_{provider_id}",
        created_at=utcnow() - timedelta(days=365) + timedelta(minutes=provider_id),
    )
    data.update(overrides)
    return ProviderRecord(**data)


async def add_provider(store, provider_id: int, terms: Optional[PlanTerms] = None, **overrides) -> ProviderRecord:
    async with store.transaction() as tx:
        provider = await tx.add_provider(make_provider(provider_id, **overrides))
        if terms is not None:
            await tx.set_subscription(SubscriptionRecord(provider_id=provider_id, terms=terms))
    return provider


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def queue():
    return MemoryNotificationQueue()


@pytest.fixture
def channel():
    return FakeChannel("email")


@pytest.fixture
def processor():
    return FakePaymentProcessor()


@pytest.fixture
def geocoder():
    return StaticGeocoder(GEO_TABLE)


@pytest_asyncio.fixture
async def marketplace(store, queue, channel, processor, geocoder, clock):
    service = await build_marketplace(
        settings,
        store=store,
        queue=queue,
        channels={"email": channel, "sms": FakeChannel("sms")},
        geocoder=geocoder,
        processor=processor,
        clock=clock,
    )
    yield service
    await service.dispatcher.drain()


@pytest.fixture
def request_input():
    return ServiceRequestInput(
        customer_id=10,
        customer_email="customer@example.com",
        category_id=1,
        postal_code="78701",
        title="Fix leaking sink",
        description="Kitchen sink drips under the cabinet",
    )


@pytest_asyncio.fixture
async def three_providers(store):
    """Three active providers around Austin in category 1."""
    return [await add_provider(store, provider_id) for provider_id in (1, 2, 3)]


async def accepted_lead(marketplace, request_input, provider_id: Optional[int] = None):
    """Create a request and have one of its providers accept it."""
    request = await marketplace.create_service_request(request_input)
    _, leads = await marketplace.service_request_with_leads(request.id)
    lead = leads[0] if provider_id is None else next(l for l in leads if l.provider_id == provider_id)
    return request, await marketplace.respond_to_lead(lead.id, "accept")


async def completed_lead(marketplace, request_input, price: Decimal = Decimal("100.00")):
    request, lead = await accepted_lead(marketplace, request_input)
    await marketplace.mark_in_progress(lead.id)
    await marketplace.mark_completed(lead.id)
    lead = await marketplace.accept_proposal(lead.id, price, "pi_test_123")
    return request, lead
