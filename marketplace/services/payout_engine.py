from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional, Tuple

from marketplace.core.exceptions import (
    BusinessRuleError,
    ExternalPaymentError,
    NotFoundError,
    ValidationError,
)
from marketplace.core.logging import get_structlog_logger
from marketplace.services.notification_dispatcher import NotificationDispatcher
from marketplace.services.payment_processor import PaymentProcessor
from marketplace.services.records import LeadRecord, PayoutRecord, utcnow
from marketplace.services.state_machine import (
    LeadStatus,
    PayoutStatus,
    ServiceRequestStatus,
    payout_machine,
)
from marketplace.services.store import Store, StoreTransaction

logger = get_structlog_logger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class PayoutSplit:
    total_amount: Decimal
    provider_payout_amount: Decimal
    platform_fee_amount: Decimal
    fee_rate: Decimal


def compute_payout(total: Decimal, fee_rate: Decimal, minimum_fee: Decimal = Decimal("0")) -> PayoutSplit:
    """
    Split ``total`` into platform fee and provider payout.

    The fee is rounded half-up to cents, raised to ``minimum_fee`` and capped
    at ``total``; the provider amount is the remainder, so the two parts
    always add back to ``total`` exactly.
    """
    total = Decimal(total).quantize(CENT, rounding=ROUND_HALF_UP)
    fee_rate = Decimal(fee_rate)
    if total <= 0:
        raise ValidationError("Payout total must be positive", code="invalid_total", details={"total": str(total)})
    if fee_rate < 0 or fee_rate > 1:
        raise ValidationError("Fee rate must be between 0 and 1", code="invalid_fee_rate", details={"fee_rate": str(fee_rate)})

    fee = (total * fee_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    fee = min(max(fee, Decimal(minimum_fee).quantize(CENT, rounding=ROUND_HALF_UP)), total)
    return PayoutSplit(
        total_amount=total,
        provider_payout_amount=total - fee,
        platform_fee_amount=fee,
        fee_rate=fee_rate,
    )


@dataclass(frozen=True)
class _Attempt:
    lead: LeadRecord
    destination: Optional[str]


class PayoutEngine:
    def __init__(
        self,
        store: Store,
        processor: PaymentProcessor,
        default_fee_rate: Decimal = Decimal("0.10"),
        minimum_fee: Decimal = Decimal("0"),
        max_attempts: int = 3,
        retry_delay_seconds: int = 300,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.processor = processor
        self.default_fee_rate = Decimal(default_fee_rate)
        self.minimum_fee = Decimal(minimum_fee)
        self.max_attempts = max_attempts
        self.retry_delay = timedelta(seconds=retry_delay_seconds)
        self.notifier = notifier
        self.clock = clock

    def fee_rate_for(self, lead: LeadRecord) -> Decimal:
        return lead.plan_fee_rate if lead.plan_fee_rate is not None else self.default_fee_rate

    async def create_payout(self, tx: StoreTransaction, lead: LeadRecord) -> PayoutRecord:
        """Compute and insert the payout inside the caller's approval transaction."""
        if lead.agreed_price is None:
            raise BusinessRuleError(
                "Lead has no agreed price",
                code="agreed_price_required",
                details={"lead_id": lead.id},
            )
        split = compute_payout(lead.agreed_price, self.fee_rate_for(lead), self.minimum_fee)
        payout = await tx.add_payout(
            PayoutRecord(
                lead_id=lead.id,
                provider_id=lead.provider_id,
                total_amount=split.total_amount,
                provider_payout_amount=split.provider_payout_amount,
                platform_fee_amount=split.platform_fee_amount,
                fee_rate=split.fee_rate,
                max_attempts=self.max_attempts,
                captured_at=lead.captured_at,
            )
        )
        logger.info(
            "payout.created",
            lead_id=lead.id,
            total=str(split.total_amount),
            provider_amount=str(split.provider_payout_amount),
            platform_fee=str(split.platform_fee_amount),
        )
        return payout

    async def get_payout(self, lead_id: int) -> PayoutRecord:
        async with self.store.transaction() as tx:
            payout = await tx.get_payout(lead_id)
        if payout is None:
            raise NotFoundError("Payout not found", details={"lead_id": lead_id})
        return payout

    async def _begin_attempt(self, lead_id: int, manual: bool) -> Tuple[PayoutRecord, Optional[_Attempt]]:
        now = self.clock()
        async with self.store.transaction() as tx:
            payout = await tx.get_payout(lead_id)
            if payout is None:
                raise NotFoundError("Payout not found", details={"lead_id": lead_id})
            if payout.status not in (PayoutStatus.PENDING, PayoutStatus.FAILED):
                return payout, None
            if payout.status == PayoutStatus.FAILED and not manual:
                if payout.attempts >= payout.max_attempts:
                    return payout, None
                if payout.next_retry_at is not None and payout.next_retry_at > now:
                    return payout, None
            payout_machine.ensure(lead_id, payout.status, PayoutStatus.PROCESSING)
            claimed = await tx.transition_payout(
                lead_id,
                expected=[payout.status],
                new_status=PayoutStatus.PROCESSING,
                expected_attempts=payout.attempts,
                attempts=payout.attempts + 1,
                processing_at=now,
                next_retry_at=None,
            )
            provider = await tx.get_provider(payout.provider_id)
            lead = await tx.get_lead(lead_id)
        if claimed is None:
            return payout, None
        destination = provider.payout_account_id if provider else None
        return claimed, _Attempt(lead=lead, destination=destination)

    async def process(self, lead_id: int, manual: bool = False) -> PayoutRecord:
        """
        Drive one transfer attempt for the lead's payout.

        Pending payouts and failed payouts under their attempt bound are
        claimed; anything else is returned unchanged. ``manual`` re-drives a
        failed payout even when its attempts are exhausted.
        """
        payout, attempt = await self._begin_attempt(lead_id, manual)
        if attempt is None:
            return payout
        lead, destination = attempt.lead, attempt.destination

        if manual:
            logger.info("payout.manual_redrive", lead_id=lead_id, attempt=payout.attempts)

        error: Optional[str] = None
        transfer_id: Optional[str] = None
        if not destination:
            error = "Provider has no payout account"
        else:
            try:
                transfer_id = await self.processor.transfer(
                    payout.provider_payout_amount,
                    destination,
                    idempotency_key=f"payout-{lead_id}-{payout.attempts}",
                    metadata={"lead_id": lead_id, "provider_id": payout.provider_id},
                )
            except ExternalPaymentError as e:
                error = e.message

        now = self.clock()
        async with self.store.transaction() as tx:
            # Same row order as the lead lifecycle: request, lead, payout
            await tx.lock_service_request(lead.service_request_id)
            if error is None:
                closed = await tx.transition_lead(
                    lead_id,
                    expected=[LeadStatus.APPROVED],
                    new_status=LeadStatus.CLOSED,
                    reason="payout_completed",
                    closed_at=now,
                )
                updated = await tx.transition_payout(
                    lead_id,
                    expected=[PayoutStatus.PROCESSING],
                    new_status=PayoutStatus.COMPLETED,
                    external_transfer_id=transfer_id,
                    transferred_at=now,
                    last_error=None,
                )
                if closed is not None:
                    await tx.update_service_request(
                        closed.service_request_id,
                        expected=[ServiceRequestStatus.APPROVED],
                        status=ServiceRequestStatus.CLOSED,
                    )
            else:
                updated = await tx.transition_payout(
                    lead_id,
                    expected=[PayoutStatus.PROCESSING],
                    new_status=PayoutStatus.FAILED,
                    last_error=error,
                    failed_at=now,
                    next_retry_at=now + self.retry_delay,
                )
            provider = await tx.get_provider(payout.provider_id)
            request = await tx.get_service_request(lead.service_request_id)

        updated = updated or payout
        title = request.title if request else ""
        if updated.status == PayoutStatus.COMPLETED:
            logger.info("payout.completed", lead_id=lead_id, transfer_id=transfer_id, attempts=updated.attempts)
            await self._notify(provider, "payout_completed", updated, title, transfer_id=transfer_id)
        else:
            exhausted = updated.attempts >= updated.max_attempts
            logger.error(
                "payout.failed",
                lead_id=lead_id,
                attempts=updated.attempts,
                max_attempts=updated.max_attempts,
                error=error,
                manual_intervention_required=exhausted,
            )
            if exhausted:
                await self._notify(provider, "payout_failed", updated, title)
        return updated

    async def _notify(self, provider, message_type: str, payout: PayoutRecord, title: str, **extra) -> None:
        if self.notifier is None or provider is None:
            return
        await self.notifier.send(
            provider.email,
            message_type,
            dict(
                project_title=title,
                payout_amount=str(payout.provider_payout_amount),
                platform_fee=str(payout.platform_fee_amount),
                **extra,
            ),
            user_id=provider.id,
            lead_id=payout.lead_id,
        )

    async def process_due(self, limit: int = 100) -> List[PayoutRecord]:
        """Process pending payouts and failed ones whose retry time has come."""
        async with self.store.transaction() as tx:
            due = await tx.list_due_payouts(self.clock(), limit)
        results = []
        for payout in due:
            results.append(await self.process(payout.lead_id))
        return results
