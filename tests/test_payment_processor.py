from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from marketplace.core.exceptions import ExternalPaymentError
from marketplace.services.payment_processor import (
    SandboxPaymentProcessor,
    StripePaymentProcessor,
    to_minor_units,
)


def test_to_minor_units():
    assert to_minor_units(Decimal("90.00")) == 9000
    assert to_minor_units(Decimal("0.01")) == 1


@pytest.mark.asyncio
async def test_sandbox_transfer_ids_are_deterministic():
    processor = SandboxPaymentProcessor()
    first = await processor.transfer(Decimal("9.00"), "acct_1", idempotency_key="payout-1-1")
    second = await processor.transfer(Decimal("9.00"), "acct_1", idempotency_key="payout-1-1")
    assert first == second
    assert first.startswith("tr_sandbox_")
    assert (await processor.capture("pi_1")).captured is True


@pytest.mark.asyncio
async def test_stripe_transfer():
    processor = StripePaymentProcessor(api_key="sk_test_123")
    with patch.object(stripe.Transfer, "create", return_value=SimpleNamespace(id="tr_42")) as create:
        transfer_id = await processor.transfer(
            Decimal("90.00"), "acct_1", idempotency_key="payout-7-1", metadata={"lead_id": 7}
        )

    assert transfer_id == "tr_42"
    create.assert_called_once_with(
        amount=9000,
        currency="usd",
        destination="acct_1",
        metadata={"lead_id": "7"},
        idempotency_key="payout-7-1",
        api_key="sk_test_123",
    )


@pytest.mark.asyncio
async def test_stripe_error_becomes_payment_error():
    processor = StripePaymentProcessor(api_key="sk_test_123")
    error = stripe.StripeError("Insufficient funds in Stripe account", code="balance_insufficient")
    with patch.object(stripe.Transfer, "create", side_effect=error):
        with pytest.raises(ExternalPaymentError) as exc_info:
            await processor.transfer(Decimal("90.00"), "acct_1", idempotency_key="payout-7-1")

    assert exc_info.value.details["stripe_code"] == "balance_insufficient"


@pytest.mark.asyncio
async def test_stripe_capture_of_authorized_intent():
    processor = StripePaymentProcessor(api_key="sk_test_123")
    authorized = SimpleNamespace(status="requires_capture", amount=15000, amount_received=0)
    captured = SimpleNamespace(status="succeeded", amount=15000, amount_received=15000)
    with patch.object(stripe.PaymentIntent, "retrieve", return_value=authorized), patch.object(
        stripe.PaymentIntent, "capture", return_value=captured
    ) as capture:
        outcome = await processor.capture("pi_abc")

    assert outcome.amount == Decimal("150")
    capture.assert_called_once_with("pi_abc", api_key="sk_test_123", idempotency_key="capture-pi_abc")


@pytest.mark.asyncio
async def test_stripe_capture_rejects_unpaid_intent():
    processor = StripePaymentProcessor(api_key="sk_test_123")
    with patch.object(stripe.PaymentIntent, "retrieve", return_value=SimpleNamespace(status="requires_payment_method")):
        with pytest.raises(ExternalPaymentError):
            await processor.capture("pi_abc")


@pytest.mark.asyncio
async def test_stripe_charge_of_saved_card():
    processor = StripePaymentProcessor(api_key="sk_test_123")
    intent = SimpleNamespace(id="pi_lead_9", status="succeeded")
    with patch.object(stripe.PaymentIntent, "create", return_value=intent) as create:
        charge_ref = await processor.charge(
            Decimal("20.00"), "cus_1", "pm_1", idempotency_key="lead-charge-9-1", metadata={"lead_id": 9}
        )

    assert charge_ref == "pi_lead_9"
    create.assert_called_once_with(
        amount=2000,
        currency="usd",
        customer="cus_1",
        payment_method="pm_1",
        off_session=True,
        confirm=True,
        metadata={"lead_id": "9"},
        idempotency_key="lead-charge-9-1",
        api_key="sk_test_123",
    )


@pytest.mark.asyncio
async def test_stripe_charge_needing_authentication_fails():
    processor = StripePaymentProcessor(api_key="sk_test_123")
    intent = SimpleNamespace(id="pi_lead_9", status="requires_action")
    with patch.object(stripe.PaymentIntent, "create", return_value=intent):
        with pytest.raises(ExternalPaymentError) as exc_info:
            await processor.charge(Decimal("20.00"), "cus_1", "pm_1", idempotency_key="lead-charge-9-1")

    assert exc_info.value.details["status"] == "requires_action"


@pytest.mark.asyncio
async def test_stripe_refund():
    processor = StripePaymentProcessor(api_key="sk_test_123")
    with patch.object(stripe.Refund, "create", return_value=SimpleNamespace(id="re_1")) as create:
        refund_id = await processor.refund("pi_lead_9", idempotency_key="lead-refund-pi_lead_9")

    assert refund_id == "re_1"
    create.assert_called_once_with(
        payment_intent="pi_lead_9",
        idempotency_key="lead-refund-pi_lead_9",
        api_key="sk_test_123",
    )


@pytest.mark.asyncio
async def test_sandbox_charge_ids_follow_the_idempotency_key():
    processor = SandboxPaymentProcessor()
    first = await processor.charge(Decimal("20.00"), "cus_1", "pm_1", idempotency_key="lead-charge-1-1")
    again = await processor.charge(Decimal("20.00"), "cus_1", "pm_1", idempotency_key="lead-charge-1-1")
    retry = await processor.charge(Decimal("20.00"), "cus_1", "pm_1", idempotency_key="lead-charge-1-2")

    assert first == again != retry
    assert first.startswith("pi_sandbox_")
