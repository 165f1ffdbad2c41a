from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import stripe

from marketplace.core.exceptions import ExternalPaymentError
from marketplace.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)


@dataclass(frozen=True)
class CaptureOutcome:
    payment_intent_ref: str
    captured: bool
    amount: Optional[Decimal] = None


class PaymentProcessor(Protocol):
    async def capture(self, payment_intent_ref: str) -> CaptureOutcome: ...

    async def charge(
        self,
        amount: Decimal,
        customer_ref: str,
        payment_method_ref: Optional[str],
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str: ...

    async def refund(self, payment_intent_ref: str, idempotency_key: str) -> str: ...

    async def transfer(
        self,
        amount: Decimal,
        destination_account: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str: ...


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


class StripePaymentProcessor:
    """Stripe Connect backed processor. SDK calls run in a worker thread under a timeout."""

    def __init__(self, api_key: str, currency: str = "usd", timeout_seconds: float = 10.0):
        self.api_key = api_key
        self.currency = currency
        self.timeout_seconds = timeout_seconds

    async def _call(self, operation: str, func, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error("payment.timeout", operation=operation, timeout=self.timeout_seconds)
            raise ExternalPaymentError(
                f"Payment processor timed out during {operation}",
                details={"operation": operation},
            ) from e
        except stripe.StripeError as e:
            logger.error("payment.stripe_error", operation=operation, error=str(e), stripe_code=e.code)
            raise ExternalPaymentError(
                e.user_message or str(e),
                details={"operation": operation, "stripe_code": e.code},
            ) from e

    async def capture(self, payment_intent_ref: str) -> CaptureOutcome:
        intent = await self._call("retrieve_intent", stripe.PaymentIntent.retrieve, payment_intent_ref)
        if intent.status == "requires_capture":
            intent = await self._call(
                "capture",
                stripe.PaymentIntent.capture,
                payment_intent_ref,
                idempotency_key=f"capture-{payment_intent_ref}",
            )
        if intent.status != "succeeded":
            raise ExternalPaymentError(
                "Payment intent is not capturable",
                details={"payment_intent": payment_intent_ref, "status": intent.status},
            )
        amount = Decimal(intent.amount_received or intent.amount or 0) / 100
        logger.info("payment.captured", payment_intent=payment_intent_ref, amount=str(amount))
        return CaptureOutcome(payment_intent_ref=payment_intent_ref, captured=True, amount=amount)

    async def charge(
        self,
        amount: Decimal,
        customer_ref: str,
        payment_method_ref: Optional[str],
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Charge a saved card off-session; anything short of ``succeeded`` is a failure."""
        intent = await self._call(
            "charge",
            stripe.PaymentIntent.create,
            amount=to_minor_units(amount),
            currency=self.currency,
            customer=customer_ref,
            payment_method=payment_method_ref,
            off_session=True,
            confirm=True,
            metadata={key: str(value) for key, value in (metadata or {}).items()},
            idempotency_key=idempotency_key,
        )
        if intent.status != "succeeded":
            raise ExternalPaymentError(
                "Charge was not completed",
                details={"payment_intent": intent.id, "status": intent.status},
            )
        logger.info("payment.charged", payment_intent=intent.id, amount=str(amount), customer=customer_ref)
        return intent.id

    async def refund(self, payment_intent_ref: str, idempotency_key: str) -> str:
        refund = await self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=payment_intent_ref,
            idempotency_key=idempotency_key,
        )
        logger.info("payment.refunded", payment_intent=payment_intent_ref, refund_id=refund.id)
        return refund.id

    async def transfer(
        self,
        amount: Decimal,
        destination_account: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        transfer = await self._call(
            "transfer",
            stripe.Transfer.create,
            amount=to_minor_units(amount),
            currency=self.currency,
            destination=destination_account,
            metadata={key: str(value) for key, value in (metadata or {}).items()},
            idempotency_key=idempotency_key,
        )
        logger.info("payment.transferred", transfer_id=transfer.id, amount=str(amount), destination=destination_account)
        return transfer.id


class SandboxPaymentProcessor:
    """Development processor: every call succeeds and returns ids derived from the idempotency key."""

    async def capture(self, payment_intent_ref: str) -> CaptureOutcome:
        logger.info("payment.sandbox_capture", payment_intent=payment_intent_ref)
        return CaptureOutcome(payment_intent_ref=payment_intent_ref, captured=True)

    async def transfer(
        self,
        amount: Decimal,
        destination_account: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        digest = hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()[:16]
        transfer_id = f"tr_sandbox_{digest}"
        logger.info("payment.sandbox_transfer", transfer_id=transfer_id, amount=str(amount), destination=destination_account)
        return transfer_id

    async def charge(
        self,
        amount: Decimal,
        customer_ref: str,
        payment_method_ref: Optional[str],
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        digest = hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()[:16]
        intent_id = f"pi_sandbox_{digest}"
        logger.info("payment.sandbox_charge", payment_intent=intent_id, amount=str(amount), customer=customer_ref)
        return intent_id

    async def refund(self, payment_intent_ref: str, idempotency_key: str) -> str:
        refund_id = f"re_sandbox_{hashlib.sha256(idempotency_key.encode('utf-8')).hexdigest()[:16]}"
        logger.info("payment.sandbox_refund", payment_intent=payment_intent_ref, refund_id=refund_id)
        return refund_id
