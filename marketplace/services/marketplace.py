"""
Facade over matching, lead lifecycle, payouts and notifications.

This is the surface the HTTP routes, workers and CLI call. Each method maps to
one marketplace action and keeps the propagation rules in one place: matching
and lifecycle errors reach the caller, notification problems never do.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from marketplace.core.exceptions import (
    BusinessRuleError,
    LeadPaymentError,
    NoEligibleProvidersError,
    NotFoundError,
    ValidationError,
)
from marketplace.core.logging import get_structlog_logger
from marketplace.services.lead_lifecycle import OPEN_REQUEST_STATUSES, PROPOSAL_STATUSES, LeadLifecycleManager
from marketplace.services.matching_engine import MatchingEngine
from marketplace.services.notification_dispatcher import NotificationDispatcher
from marketplace.services.payment_processor import PaymentProcessor
from marketplace.services.payout_engine import PayoutEngine
from marketplace.services.records import (
    DeclineReason,
    Decision,
    DeliveryAttemptRecord,
    LeadEventRecord,
    LeadRecord,
    NotificationPreferenceRecord,
    NotificationRecord,
    PayoutRecord,
    ServiceRequestRecord,
    utcnow,
)
from marketplace.services.state_machine import ServiceRequestStatus
from marketplace.services.store import Store
from marketplace.services.templates import TEMPLATES

logger = get_structlog_logger(__name__)


@dataclass(frozen=True)
class ServiceRequestInput:
    customer_id: int
    customer_email: str
    category_id: Optional[int]
    postal_code: str
    title: str
    description: str = ""
    subcategory_id: Optional[int] = None
    city: Optional[str] = None
    customer_phone: Optional[str] = None


@dataclass
class ReassignmentSummary:
    examined: int = 0
    reassigned: int = 0
    unmatched: int = 0
    skipped: int = 0
    lead_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "examined": self.examined,
            "reassigned": self.reassigned,
            "unmatched": self.unmatched,
            "skipped": self.skipped,
            "lead_ids": list(self.lead_ids),
        }


class MarketplaceService:
    def __init__(
        self,
        store: Store,
        matching: MatchingEngine,
        lifecycle: LeadLifecycleManager,
        payouts: PayoutEngine,
        dispatcher: NotificationDispatcher,
        processor: PaymentProcessor,
        stale_after: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.matching = matching
        self.lifecycle = lifecycle
        self.payouts = payouts
        self.dispatcher = dispatcher
        self.processor = processor
        self.stale_after = stale_after
        self.clock = clock

    # Service requests

    async def create_service_request(self, data: ServiceRequestInput) -> ServiceRequestRecord:
        if data.category_id is None:
            raise ValidationError("Service request needs a category", code="category_required")

        now = self.clock()
        async with self.store.transaction() as tx:
            request = await tx.add_service_request(
                ServiceRequestRecord(
                    customer_id=data.customer_id,
                    customer_email=data.customer_email,
                    customer_phone=data.customer_phone,
                    category_id=data.category_id,
                    subcategory_id=data.subcategory_id,
                    postal_code=data.postal_code,
                    city=data.city,
                    title=data.title,
                    description=data.description,
                    created_at=now,
                    updated_at=now,
                )
            )
        logger.info("service_request.created", service_request_id=request.id, category_id=request.category_id)

        await self.dispatcher.send(
            request.customer_email,
            "request_created",
            self.lifecycle.payload(request),
            user_id=request.customer_id,
            service_request_id=request.id,
        )

        try:
            await self._distribute(request)
        except NoEligibleProvidersError:
            async with self.store.transaction() as tx:
                await tx.update_service_request(
                    request.id,
                    expected=[ServiceRequestStatus.REQUEST_CREATED],
                    status=ServiceRequestStatus.UNASSIGNED,
                )
            logger.warning("service_request.unassigned", service_request_id=request.id)
            await self.dispatcher.send(
                request.customer_email,
                "no_provider_available",
                self.lifecycle.payload(request),
                user_id=request.customer_id,
                service_request_id=request.id,
            )

        return await self._load_request(request.id)

    async def _distribute(
        self,
        request: ServiceRequestRecord,
        exclude_provider_ids=(),
        message_type: str = "new_lead",
    ) -> List[LeadRecord]:
        ranked = await self.matching.rank(request, exclude_provider_ids=exclude_provider_ids)
        leads = await self.lifecycle.create_leads(request, ranked)
        notified = []
        for lead in leads:
            notified.append(await self.lifecycle.notify(lead, message_type=message_type))
        return notified

    async def _load_request(self, service_request_id: int) -> ServiceRequestRecord:
        async with self.store.transaction() as tx:
            request = await tx.get_service_request(service_request_id)
        if request is None:
            raise NotFoundError("Service request not found", details={"service_request_id": service_request_id})
        return request

    async def cancel_service_request(self, service_request_id: int, reason: str = "request_cancelled") -> ServiceRequestRecord:
        return await self.lifecycle.cancel_request(service_request_id, reason)

    async def reassign_providers(self, service_request_id: int) -> List[LeadRecord]:
        """Offer the request to further providers, skipping everyone who already has a lead for it."""
        async with self.store.transaction() as tx:
            request = await tx.get_service_request(service_request_id)
            if request is None:
                raise NotFoundError("Service request not found", details={"service_request_id": service_request_id})
            existing = await tx.list_leads_for_request(service_request_id)

        if request.accepted_lead_id is not None or request.status not in OPEN_REQUEST_STATUSES:
            raise BusinessRuleError(
                "Service request cannot be reassigned",
                code="request_not_reassignable",
                details={
                    "service_request_id": service_request_id,
                    "status": request.status.value,
                    "accepted_lead_id": request.accepted_lead_id,
                },
            )

        leads = await self._distribute(request, exclude_provider_ids=[lead.provider_id for lead in existing])
        logger.info(
            "service_request.reassigned",
            service_request_id=service_request_id,
            lead_ids=[lead.id for lead in leads],
        )
        return leads

    async def reassign_stale_requests(self, older_than: Optional[timedelta] = None, limit: int = 100) -> ReassignmentSummary:
        """
        Re-run matching for requests nobody accepted within ``older_than``.

        A request is only picked up when its newest lead is also older than
        the threshold, so each sweep gives the previous batch of providers a
        full window to respond.
        """
        cutoff = self.clock() - (older_than or self.stale_after)
        async with self.store.transaction() as tx:
            candidates = await tx.list_unaccepted_requests(OPEN_REQUEST_STATUSES, created_before=cutoff, limit=limit)
            recent = {}
            for request in candidates:
                leads = await tx.list_leads_for_request(request.id)
                recent[request.id] = any(lead.created_at > cutoff for lead in leads)

        summary = ReassignmentSummary()
        for request in candidates:
            summary.examined += 1
            if recent[request.id]:
                summary.skipped += 1
                continue
            try:
                leads = await self.reassign_providers(request.id)
            except NoEligibleProvidersError:
                summary.unmatched += 1
                continue
            except BusinessRuleError as e:
                logger.info("service_request.reassign_skipped", service_request_id=request.id, error=e.message)
                summary.skipped += 1
                continue
            summary.reassigned += 1
            summary.lead_ids.extend(lead.id for lead in leads)

        logger.info("service_request.stale_sweep", **summary.to_dict())
        return summary

    # Lead actions

    async def view_lead(self, lead_id: int) -> LeadRecord:
        return await self.lifecycle.view(lead_id)

    async def respond_to_lead(
        self,
        lead_id: int,
        decision: Decision,
        reason: Optional[DeclineReason] = None,
        note: Optional[str] = None,
    ) -> LeadRecord:
        try:
            return await self.lifecycle.respond(lead_id, decision, reason=reason, note=note)
        except LeadPaymentError:
            await self._offer_alternatives(lead_id)
            raise

    async def _offer_alternatives(self, lead_id: int) -> List[LeadRecord]:
        """Offer the request to providers who have no lead for it yet, after an acceptance charge failed."""
        async with self.store.transaction() as tx:
            lead = await tx.get_lead(lead_id)
            request = await tx.get_service_request(lead.service_request_id)
            existing = await tx.list_leads_for_request(lead.service_request_id)
        try:
            leads = await self._distribute(
                request,
                exclude_provider_ids=[item.provider_id for item in existing],
                message_type="lead_moved_to_alternative",
            )
        except NoEligibleProvidersError:
            logger.info("lead.no_alternative_provider", lead_id=lead_id, service_request_id=request.id)
            return []
        except BusinessRuleError as e:
            logger.info("lead.alternative_skipped", lead_id=lead_id, service_request_id=request.id, error=e.message)
            return []
        logger.info(
            "lead.moved_to_alternative",
            lead_id=lead_id,
            service_request_id=request.id,
            lead_ids=[item.id for item in leads],
        )
        return leads

    async def mark_in_progress(self, lead_id: int) -> LeadRecord:
        return await self.lifecycle.start(lead_id)

    async def mark_completed(self, lead_id: int) -> LeadRecord:
        return await self.lifecycle.complete(lead_id)

    async def accept_proposal(self, lead_id: int, amount: Decimal, payment_intent_ref: str) -> LeadRecord:
        """Capture the customer's payment for the agreed price and record it on the lead."""
        lead = await self.lifecycle.get_lead(lead_id)
        if lead.status not in PROPOSAL_STATUSES:
            raise BusinessRuleError(
                "Lead is not open for a proposal",
                code="proposal_not_allowed",
                details={"lead_id": lead_id, "status": lead.status.value},
            )
        outcome = await self.processor.capture(payment_intent_ref)
        return await self.lifecycle.record_agreed_price(
            lead_id,
            amount,
            outcome.payment_intent_ref,
            captured_at=self.clock(),
        )

    async def approve_lead(self, lead_id: int) -> PayoutRecord:
        payout, _ = await self.lifecycle.approve(lead_id)
        return payout

    async def close_lead(self, lead_id: int) -> LeadRecord:
        return await self.lifecycle.close(lead_id)

    async def cancel_lead(self, lead_id: int, reason: str = "cancelled") -> LeadRecord:
        return await self.lifecycle.cancel(lead_id, reason)

    async def process_payout(self, lead_id: int, manual: bool = False) -> PayoutRecord:
        return await self.payouts.process(lead_id, manual=manual)

    # Reads

    async def service_request_with_leads(self, service_request_id: int) -> Tuple[ServiceRequestRecord, List[LeadRecord]]:
        async with self.store.transaction() as tx:
            request = await tx.get_service_request(service_request_id)
            if request is None:
                raise NotFoundError("Service request not found", details={"service_request_id": service_request_id})
            leads = await tx.list_leads_for_request(service_request_id)
        return request, leads

    async def lead_with_events(self, lead_id: int) -> Tuple[LeadRecord, List[LeadEventRecord]]:
        async with self.store.transaction() as tx:
            lead = await tx.get_lead(lead_id)
            if lead is None:
                raise NotFoundError("Lead not found", details={"lead_id": lead_id})
            events = await tx.list_lead_events(lead_id)
        return lead, events

    async def get_payout(self, lead_id: int) -> PayoutRecord:
        return await self.payouts.get_payout(lead_id)

    async def lead_notifications(self, lead_id: int) -> List[Tuple[NotificationRecord, List[DeliveryAttemptRecord]]]:
        async with self.store.transaction() as tx:
            if await tx.get_lead(lead_id) is None:
                raise NotFoundError("Lead not found", details={"lead_id": lead_id})
            records = await tx.list_notifications(lead_id=lead_id)
            return [(record, await tx.list_delivery_attempts(record.id)) for record in records]

    async def failed_notifications(self, limit: int = 100) -> List[NotificationRecord]:
        return await self.dispatcher.failed_notifications(limit)

    # Notification preferences

    async def notification_preferences(self, user_id: int) -> NotificationPreferenceRecord:
        """The user's preferences, created with defaults and an unsubscribe token on first read."""
        async with self.store.transaction() as tx:
            preference = await tx.get_notification_preference(user_id)
            if preference is None:
                preference = await tx.set_notification_preference(
                    NotificationPreferenceRecord(user_id=user_id, unsubscribe_token=secrets.token_hex(32))
                )
        return preference

    async def update_notification_preferences(
        self,
        user_id: int,
        email_enabled: Optional[bool] = None,
        sms_enabled: Optional[bool] = None,
        disabled_types: Optional[Sequence[str]] = None,
    ) -> NotificationPreferenceRecord:
        preference = await self.notification_preferences(user_id)
        if email_enabled is not None:
            preference.email_enabled = email_enabled
        if sms_enabled is not None:
            preference.sms_enabled = sms_enabled
        if disabled_types is not None:
            unknown = sorted(set(disabled_types) - set(TEMPLATES))
            if unknown:
                raise ValidationError(
                    "Unknown notification types",
                    code="unknown_message_type",
                    details={"message_types": unknown},
                )
            preference.disabled_types = sorted(set(disabled_types))
        async with self.store.transaction() as tx:
            preference = await tx.set_notification_preference(preference)
        logger.info(
            "notification.preferences_updated",
            user_id=user_id,
            email_enabled=preference.email_enabled,
            sms_enabled=preference.sms_enabled,
            disabled_types=preference.disabled_types,
        )
        return preference

    async def unsubscribe(self, token: str) -> NotificationPreferenceRecord:
        """Turn off email for the user the unsubscribe link was issued to."""
        async with self.store.transaction() as tx:
            preference = await tx.get_notification_preference_by_token(token)
            if preference is None:
                raise NotFoundError("Unsubscribe link not recognised", code="unsubscribe_token_unknown")
            preference.email_enabled = False
            preference = await tx.set_notification_preference(preference)
        logger.info("notification.unsubscribed", user_id=preference.user_id)
        return preference

