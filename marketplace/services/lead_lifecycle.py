from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from marketplace.core.exceptions import (
    BusinessRuleError,
    DuplicateLeadError,
    DuplicatePayoutError,
    ExternalPaymentError,
    InvalidTransitionError,
    LeadPaymentError,
    NotFoundError,
    ValidationError,
)
from marketplace.core.logging import get_structlog_logger
from marketplace.services.matching_engine import RankedProvider
from marketplace.services.notification_dispatcher import NotificationDispatcher
from marketplace.services.payment_processor import PaymentProcessor
from marketplace.services.payout_engine import PayoutEngine
from marketplace.services.records import (
    DeclineReason,
    Decision,
    LeadRecord,
    PayoutRecord,
    ProviderRecord,
    ServiceRequestRecord,
    utcnow,
)
from marketplace.services.state_machine import (
    LIVE_LEAD_STATUSES,
    VIEWED_OR_LATER,
    LeadStatus,
    PayoutStatus,
    ServiceRequestStatus,
    lead_machine,
    service_request_machine,
)
from marketplace.services.store import Store, StoreTransaction

logger = get_structlog_logger(__name__)

STATUS_TIMESTAMPS = {
    LeadStatus.NOTIFIED: "notified_at",
    LeadStatus.VIEWED: "viewed_at",
    LeadStatus.ACCEPTED: "responded_at",
    LeadStatus.DECLINED: "responded_at",
    LeadStatus.IN_PROGRESS: "started_at",
    LeadStatus.COMPLETED: "completed_at",
    LeadStatus.APPROVED: "approved_at",
    LeadStatus.CLOSED: "closed_at",
    LeadStatus.CANCELLED: "cancelled_at",
}

PROPOSAL_STATUSES = (LeadStatus.ACCEPTED, LeadStatus.IN_PROGRESS, LeadStatus.COMPLETED)

# Requests that can still be offered to more providers
OPEN_REQUEST_STATUSES = (
    ServiceRequestStatus.REQUEST_CREATED,
    ServiceRequestStatus.LEAD_ASSIGNED,
    ServiceRequestStatus.UNASSIGNED,
)


@dataclass
class _Outbox:
    """Notifications collected inside a transaction and sent after commit."""

    messages: List[Tuple[Optional[str], str, Dict[str, Any], Dict[str, Any]]] = field(default_factory=list)

    def add(self, recipient: Optional[str], message_type: str, payload: Dict[str, Any], **meta: Any) -> None:
        self.messages.append((recipient, message_type, payload, meta))


class LeadLifecycleManager:
    """
    Lead state changes and the side effects that go with them.

    Every mutating path locks the service request row before touching any
    lead of it, so concurrent accepts, declines and cancellations on one
    request queue up instead of deadlocking. When ``charge_lead_cost`` is
    set the provider's card is charged the lead cost before the claim; the
    charge runs outside any transaction and is refunded if the claim is
    then lost.
    """

    def __init__(
        self,
        store: Store,
        dispatcher: NotificationDispatcher,
        payout_engine: PayoutEngine,
        exclusive_acceptance: bool = True,
        frontend_url: str = "",
        processor: Optional[PaymentProcessor] = None,
        charge_lead_cost: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.payout_engine = payout_engine
        self.exclusive_acceptance = exclusive_acceptance
        self.frontend_url = frontend_url.rstrip("/")
        self.processor = processor
        self.charge_lead_cost = charge_lead_cost and processor is not None
        self.clock = clock

    # Helpers

    async def _load(self, tx: StoreTransaction, lead_id: int) -> LeadRecord:
        lead = await tx.get_lead(lead_id)
        if lead is None:
            raise NotFoundError("Lead not found", details={"lead_id": lead_id})
        return lead

    async def _locked(self, tx: StoreTransaction, lead_id: int) -> Tuple[LeadRecord, Optional[ServiceRequestRecord]]:
        """Lock the lead's request row, then read the lead as it stands under that lock."""
        lead = await self._load(tx, lead_id)
        request = await tx.lock_service_request(lead.service_request_id)
        return await self._load(tx, lead_id), request

    async def _transition(
        self,
        tx: StoreTransaction,
        lead: LeadRecord,
        target: LeadStatus,
        reason: Optional[str] = None,
        **changes: Any,
    ) -> LeadRecord:
        lead_machine.ensure(lead.id, lead.status, target)
        changes.setdefault(STATUS_TIMESTAMPS[target], self.clock())
        updated = await tx.transition_lead(lead.id, [lead.status], target, reason=reason, **changes)
        if updated is None:
            # Another writer moved the lead first
            current = await tx.get_lead(lead.id)
            raise InvalidTransitionError("lead", lead.id, current.status if current else lead.status, target)
        logger.info(
            "lead.transitioned",
            lead_id=lead.id,
            service_request_id=lead.service_request_id,
            from_status=lead.status.value,
            to_status=target.value,
            reason=reason,
        )
        return updated

    async def _advance_request(
        self,
        tx: StoreTransaction,
        service_request_id: int,
        target: ServiceRequestStatus,
        **changes: Any,
    ) -> Optional[ServiceRequestRecord]:
        request = await tx.get_service_request(service_request_id)
        if request is None or request.status == target:
            return request
        if not service_request_machine.can_transition(request.status, target):
            logger.debug(
                "service_request.status_unchanged",
                service_request_id=service_request_id,
                status=request.status.value,
                target=target.value,
            )
            return request
        return await tx.update_service_request(service_request_id, expected=[request.status], status=target, **changes)

    async def _release_if_idle(self, tx: StoreTransaction, service_request_id: int) -> None:
        """Mark the request unassigned when no lead can still be accepted or worked."""
        request = await tx.get_service_request(service_request_id)
        if request is None or request.accepted_lead_id is not None:
            return
        leads = await tx.list_leads_for_request(service_request_id)
        if not any(lead.status in LIVE_LEAD_STATUSES for lead in leads):
            await self._advance_request(tx, service_request_id, ServiceRequestStatus.UNASSIGNED)

    def payload(
        self,
        request: Optional[ServiceRequestRecord],
        lead: Optional[LeadRecord] = None,
        provider: Optional[ProviderRecord] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if request is not None:
            data.update(
                project_title=request.title,
                postal_code=request.postal_code,
                request_url=f"{self.frontend_url}/requests/{request.id}",
            )
        if lead is not None:
            data.update(lead_url=f"{self.frontend_url}/leads/{lead.id}", lead_cost=str(lead.lead_cost))
        if provider is not None:
            data.update(provider_name=provider.name)
        data.update(extra)
        return data

    async def _flush(self, outbox: _Outbox) -> None:
        for recipient, message_type, payload, meta in outbox.messages:
            await self.dispatcher.send(recipient, message_type, payload, **meta)

    async def get_lead(self, lead_id: int) -> LeadRecord:
        async with self.store.transaction() as tx:
            return await self._load(tx, lead_id)

    # Creation

    async def create_leads(self, request: ServiceRequestRecord, ranked: Sequence[RankedProvider]) -> List[LeadRecord]:
        """
        Insert one lead per ranked provider, in rank order, in one transaction.

        The request is re-read under its row lock; a request accepted or
        closed since it was ranked gets no new leads.
        """
        created: List[LeadRecord] = []
        async with self.store.transaction() as tx:
            current = await tx.lock_service_request(request.id)
            if current is None:
                raise NotFoundError("Service request not found", details={"service_request_id": request.id})
            if current.accepted_lead_id is not None or current.status not in OPEN_REQUEST_STATUSES:
                raise BusinessRuleError(
                    "Service request cannot be reassigned",
                    code="request_not_reassignable",
                    details={"service_request_id": request.id, "status": current.status.value},
                )
            for item in ranked:
                try:
                    lead = await tx.add_lead(
                        LeadRecord(
                            service_request_id=request.id,
                            provider_id=item.provider_id,
                            category_id=request.category_id,
                            rank_position=item.rank_position,
                            score=item.score,
                            lead_cost=item.lead_cost,
                            plan_tier=item.terms.tier,
                            plan_discount_percent=item.terms.lead_discount_percent,
                            plan_fee_rate=item.terms.platform_fee_rate,
                            created_at=self.clock(),
                        )
                    )
                except DuplicateLeadError:
                    logger.info(
                        "lead.duplicate_skipped",
                        service_request_id=request.id,
                        provider_id=item.provider_id,
                    )
                    continue
                created.append(lead)
            if created:
                await self._advance_request(tx, request.id, ServiceRequestStatus.LEAD_ASSIGNED)

        logger.info(
            "lead.created",
            service_request_id=request.id,
            lead_ids=[lead.id for lead in created],
        )
        return created

    async def notify(self, lead: LeadRecord, message_type: str = "new_lead") -> LeadRecord:
        """Queue the new-lead message and mark the lead notified; delivery is not awaited."""
        async with self.store.transaction() as tx:
            request = await tx.get_service_request(lead.service_request_id)
            provider = await tx.get_provider(lead.provider_id)

        await self.dispatcher.send(
            provider.email if provider else None,
            message_type,
            self.payload(request, lead, provider),
            user_id=lead.provider_id,
            lead_id=lead.id,
            service_request_id=lead.service_request_id,
        )

        try:
            async with self.store.transaction() as tx:
                current, _ = await self._locked(tx, lead.id)
                return await self._transition(tx, current, LeadStatus.NOTIFIED)
        except InvalidTransitionError as e:
            # Cancelled or otherwise moved while the message was queued
            logger.info("lead.notify_skipped", lead_id=lead.id, error=e.message)
            return await self.get_lead(lead.id)

    # Provider actions

    async def view(self, lead_id: int) -> LeadRecord:
        async with self.store.transaction() as tx:
            lead, _ = await self._locked(tx, lead_id)
            if lead.status in VIEWED_OR_LATER:
                return lead
            return await self._transition(tx, lead, LeadStatus.VIEWED)

    async def respond(
        self,
        lead_id: int,
        decision: Decision,
        reason: Optional[DeclineReason] = None,
        note: Optional[str] = None,
    ) -> LeadRecord:
        decision = Decision(decision)
        if decision == Decision.DECLINE:
            return await self._decline(lead_id, reason, note)
        return await self._accept(lead_id)

    async def _decline(self, lead_id: int, reason: Optional[DeclineReason], note: Optional[str]) -> LeadRecord:
        if reason is None:
            raise ValidationError("A decline reason is required", code="decline_reason_required")
        reason = DeclineReason(reason)
        if reason == DeclineReason.OTHER and not (note and note.strip()):
            raise ValidationError("Describe the reason when declining with 'other'", code="decline_note_required")

        async with self.store.transaction() as tx:
            lead, _ = await self._locked(tx, lead_id)
            if lead.status == LeadStatus.NOTIFIED:
                lead = await self._transition(tx, lead, LeadStatus.VIEWED)
            lead = await self._transition(
                tx,
                lead,
                LeadStatus.DECLINED,
                reason=reason.value,
                decline_reason=reason,
                decline_note=note,
            )
            await self._release_if_idle(tx, lead.service_request_id)
        return lead

    def _ensure_claimable(self, lead: LeadRecord, request: Optional[ServiceRequestRecord]) -> None:
        if self.exclusive_acceptance and request is not None and request.accepted_lead_id not in (None, lead.id):
            raise InvalidTransitionError(
                "lead",
                lead.id,
                lead.status,
                LeadStatus.ACCEPTED,
                code="request_already_accepted",
                details={"lead_id": lead.id, "service_request_id": lead.service_request_id},
            )

    async def _accept(self, lead_id: int) -> LeadRecord:
        charge_ref = await self._charge(lead_id) if self.charge_lead_cost else None
        try:
            return await self._claim(lead_id, charge_ref)
        except Exception:
            if charge_ref is not None:
                await self._refund(lead_id, charge_ref)
            raise

    async def _charge(self, lead_id: int) -> Optional[str]:
        """Charge the provider the lead cost. Returns the charge reference, or ``None`` for a free lead."""
        async with self.store.transaction() as tx:
            lead, request = await self._locked(tx, lead_id)
            if lead.status == LeadStatus.NOTIFIED:
                lead = await self._transition(tx, lead, LeadStatus.VIEWED)
            lead_machine.ensure(lead.id, lead.status, LeadStatus.ACCEPTED)
            self._ensure_claimable(lead, request)
            if lead.lead_cost <= 0:
                return None
            lead = await tx.update_lead(
                lead.id,
                expected=[lead.status],
                lead_charge_attempts=lead.lead_charge_attempts + 1,
            )
            provider = await tx.get_provider(lead.provider_id)

        error: Optional[str] = None
        if provider is None or not provider.billing_customer_id:
            error = "No payment method on file"
        else:
            try:
                charge_ref = await self.processor.charge(
                    lead.lead_cost,
                    provider.billing_customer_id,
                    provider.billing_payment_method_id,
                    idempotency_key=f"lead-charge-{lead.id}-{lead.lead_charge_attempts}",
                    metadata={"lead_id": str(lead.id), "provider_id": str(lead.provider_id)},
                )
            except ExternalPaymentError as e:
                error = e.message
        if error is None:
            return charge_ref

        async with self.store.transaction() as tx:
            await self._locked(tx, lead.id)
            await tx.update_lead(lead.id, expected=[lead.status], lead_charge_error=error)
        logger.warning(
            "lead.charge_failed",
            lead_id=lead.id,
            provider_id=lead.provider_id,
            attempt=lead.lead_charge_attempts,
            error=error,
        )
        await self.dispatcher.send(
            provider.email if provider else None,
            "lead_payment_failed",
            self.payload(request, lead, provider, charge_error=error),
            user_id=lead.provider_id,
            lead_id=lead.id,
            service_request_id=lead.service_request_id,
        )
        raise LeadPaymentError(lead.id, error)

    async def _refund(self, lead_id: int, charge_ref: str) -> None:
        try:
            await self.processor.refund(charge_ref, idempotency_key=f"lead-refund-{charge_ref}")
        except ExternalPaymentError as e:
            logger.error(
                "lead.charge_refund_failed",
                lead_id=lead_id,
                charge_ref=charge_ref,
                error=e.message,
                manual_intervention_required=True,
            )
            return
        logger.info("lead.charge_refunded", lead_id=lead_id, charge_ref=charge_ref)

    async def _claim(self, lead_id: int, charge_ref: Optional[str]) -> LeadRecord:
        outbox = _Outbox()
        async with self.store.transaction() as tx:
            lead, request = await self._locked(tx, lead_id)
            if lead.status == LeadStatus.NOTIFIED:
                lead = await self._transition(tx, lead, LeadStatus.VIEWED)
            lead_machine.ensure(lead.id, lead.status, LeadStatus.ACCEPTED)

            claimed = await tx.claim_service_request(lead.service_request_id, lead.id)
            if not claimed:
                self._ensure_claimable(lead, await tx.get_service_request(lead.service_request_id))
            charge_changes: Dict[str, Any] = {}
            if charge_ref is not None:
                charge_changes = dict(lead_charge_ref=charge_ref, lead_charged_at=self.clock(), lead_charge_error=None)
            lead = await self._transition(tx, lead, LeadStatus.ACCEPTED, **charge_changes)

            cancelled: List[LeadRecord] = []
            if self.exclusive_acceptance:
                for sibling in await tx.list_leads_for_request(lead.service_request_id):
                    if sibling.id == lead.id or sibling.status not in LIVE_LEAD_STATUSES:
                        continue
                    cancelled.append(
                        await self._transition(
                            tx,
                            sibling,
                            LeadStatus.CANCELLED,
                            reason="accepted_by_other_provider",
                            cancel_reason="accepted_by_other_provider",
                        )
                    )

            request = await self._advance_request(tx, lead.service_request_id, ServiceRequestStatus.LEAD_ASSIGNED)
            provider = await tx.get_provider(lead.provider_id)

            outbox.add(
                request.customer_email if request else None,
                "lead_accepted_customer",
                self.payload(request, lead, provider),
                user_id=request.customer_id if request else None,
                lead_id=lead.id,
                service_request_id=lead.service_request_id,
            )
            if request is not None and request.customer_phone:
                outbox.add(
                    request.customer_phone,
                    "lead_accepted_customer",
                    self.payload(request, lead, provider),
                    channel="sms",
                    user_id=request.customer_id,
                    lead_id=lead.id,
                    service_request_id=lead.service_request_id,
                )
            outbox.add(
                provider.email if provider else None,
                "lead_accepted_provider",
                self.payload(request, lead, provider),
                user_id=lead.provider_id,
                lead_id=lead.id,
                service_request_id=lead.service_request_id,
            )
            for sibling in cancelled:
                sibling_provider = await tx.get_provider(sibling.provider_id)
                outbox.add(
                    sibling_provider.email if sibling_provider else None,
                    "lead_no_longer_available",
                    self.payload(request, sibling, sibling_provider),
                    user_id=sibling.provider_id,
                    lead_id=sibling.id,
                    service_request_id=sibling.service_request_id,
                )

        logger.info(
            "lead.accepted",
            lead_id=lead.id,
            service_request_id=lead.service_request_id,
            charge_ref=charge_ref,
            cancelled_siblings=[sibling.id for sibling in cancelled],
        )
        await self._flush(outbox)
        return lead

    async def _progress(
        self,
        lead_id: int,
        target: LeadStatus,
        request_status: ServiceRequestStatus,
        message_type: str,
    ) -> LeadRecord:
        async with self.store.transaction() as tx:
            lead, _ = await self._locked(tx, lead_id)
            lead = await self._transition(tx, lead, target)
            request = await self._advance_request(tx, lead.service_request_id, request_status)
            provider = await tx.get_provider(lead.provider_id)
        await self.dispatcher.send(
            request.customer_email if request else None,
            message_type,
            self.payload(request, lead, provider),
            user_id=request.customer_id if request else None,
            lead_id=lead.id,
            service_request_id=lead.service_request_id,
        )
        return lead

    async def start(self, lead_id: int) -> LeadRecord:
        return await self._progress(lead_id, LeadStatus.IN_PROGRESS, ServiceRequestStatus.IN_PROGRESS, "work_started")

    async def complete(self, lead_id: int) -> LeadRecord:
        return await self._progress(lead_id, LeadStatus.COMPLETED, ServiceRequestStatus.COMPLETED, "work_completed")

    async def record_agreed_price(
        self,
        lead_id: int,
        amount: Decimal,
        payment_intent_ref: str,
        captured_at: Optional[datetime] = None,
    ) -> LeadRecord:
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("Agreed price must be positive", code="invalid_amount", details={"amount": str(amount)})
        async with self.store.transaction() as tx:
            lead, _ = await self._locked(tx, lead_id)
            updated = await tx.update_lead(
                lead_id,
                expected=PROPOSAL_STATUSES,
                agreed_price=amount,
                payment_intent_ref=payment_intent_ref,
                captured_at=captured_at or self.clock(),
            )
        if updated is None:
            raise BusinessRuleError(
                "Lead is not open for a proposal",
                code="proposal_not_allowed",
                details={"lead_id": lead_id, "status": lead.status.value},
            )
        logger.info("lead.agreed_price_recorded", lead_id=lead_id, amount=str(amount))
        return updated

    # Customer actions

    async def approve(self, lead_id: int) -> Tuple[PayoutRecord, bool]:
        """
        Approve completed work and create its payout.

        Returns ``(payout, created)``. Approving again, or losing a race to a
        concurrent approval, returns the existing payout with ``created``
        false; the amounts are never recomputed.
        """
        try:
            async with self.store.transaction() as tx:
                lead, _ = await self._locked(tx, lead_id)
                if lead.status in (LeadStatus.APPROVED, LeadStatus.CLOSED):
                    existing = await tx.get_payout(lead_id)
                    if existing is not None:
                        return existing, False
                lead_machine.ensure(lead.id, lead.status, LeadStatus.APPROVED)
                if lead.agreed_price is None:
                    raise BusinessRuleError(
                        "Lead has no agreed price",
                        code="agreed_price_required",
                        details={"lead_id": lead_id},
                    )
                lead = await self._transition(tx, lead, LeadStatus.APPROVED)
                payout = await self.payout_engine.create_payout(tx, lead)
                request = await self._advance_request(tx, lead.service_request_id, ServiceRequestStatus.APPROVED)
                provider = await tx.get_provider(lead.provider_id)
        except (InvalidTransitionError, DuplicatePayoutError):
            async with self.store.transaction() as tx:
                existing = await tx.get_payout(lead_id)
            if existing is None:
                raise
            logger.info("payout.duplicate_approval", lead_id=lead_id)
            return existing, False

        await self.dispatcher.send(
            provider.email if provider else None,
            "payout_scheduled",
            self.payload(
                request,
                lead,
                provider,
                payout_amount=str(payout.provider_payout_amount),
                platform_fee=str(payout.platform_fee_amount),
            ),
            user_id=lead.provider_id,
            lead_id=lead.id,
            service_request_id=lead.service_request_id,
        )
        return payout, True

    async def close(self, lead_id: int) -> LeadRecord:
        """Close an approved lead whose payout has settled. The payout engine does this on transfer."""
        async with self.store.transaction() as tx:
            lead, _ = await self._locked(tx, lead_id)
            if lead.status == LeadStatus.CLOSED:
                return lead
            payout = await tx.get_payout(lead_id)
            if payout is None or payout.status != PayoutStatus.COMPLETED:
                raise BusinessRuleError(
                    "Payout has not settled",
                    code="payout_not_settled",
                    details={"lead_id": lead_id, "payout_status": payout.status.value if payout else None},
                )
            lead = await self._transition(tx, lead, LeadStatus.CLOSED, reason="payout_completed")
            await self._advance_request(tx, lead.service_request_id, ServiceRequestStatus.CLOSED)
        return lead

    # Cancellation

    async def cancel(self, lead_id: int, reason: str = "cancelled") -> LeadRecord:
        async with self.store.transaction() as tx:
            lead, _ = await self._locked(tx, lead_id)
            lead = await self._transition(
                tx,
                lead,
                LeadStatus.CANCELLED,
                reason=reason,
                cancel_reason=reason,
            )
            if await tx.release_service_request(lead.service_request_id, lead.id):
                logger.info(
                    "service_request.claim_released",
                    service_request_id=lead.service_request_id,
                    lead_id=lead.id,
                )
            await self._release_if_idle(tx, lead.service_request_id)
            request = await tx.get_service_request(lead.service_request_id)
            provider = await tx.get_provider(lead.provider_id)
        await self.dispatcher.send(
            provider.email if provider else None,
            "lead_no_longer_available",
            self.payload(request, lead, provider),
            user_id=lead.provider_id,
            lead_id=lead.id,
            service_request_id=lead.service_request_id,
        )
        return lead

    async def cancel_request(self, service_request_id: int, reason: str = "request_cancelled") -> ServiceRequestRecord:
        """Cancel the request and every lead of it that is not yet terminal."""
        outbox = _Outbox()
        async with self.store.transaction() as tx:
            request = await tx.lock_service_request(service_request_id)
            if request is None:
                raise NotFoundError("Service request not found", details={"service_request_id": service_request_id})
            service_request_machine.ensure(service_request_id, request.status, ServiceRequestStatus.CANCELLED)

            for lead in await tx.list_leads_for_request(service_request_id):
                if lead.status not in LIVE_LEAD_STATUSES:
                    continue
                lead = await self._transition(tx, lead, LeadStatus.CANCELLED, reason=reason, cancel_reason=reason)
                provider = await tx.get_provider(lead.provider_id)
                outbox.add(
                    provider.email if provider else None,
                    "lead_no_longer_available",
                    self.payload(request, lead, provider),
                    user_id=lead.provider_id,
                    lead_id=lead.id,
                    service_request_id=service_request_id,
                )

            request = await tx.update_service_request(
                service_request_id,
                expected=[request.status],
                status=ServiceRequestStatus.CANCELLED,
            )
            outbox.add(
                request.customer_email,
                "request_cancelled",
                self.payload(request),
                user_id=request.customer_id,
                service_request_id=service_request_id,
            )

        logger.info("service_request.cancelled", service_request_id=service_request_id, reason=reason)
        await self._flush(outbox)
        return request
