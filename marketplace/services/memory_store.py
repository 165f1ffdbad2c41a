"""
In-memory store for local development and tests.

Transactions are serialised with an ``asyncio.Lock``; a snapshot of the whole
state is taken on entry and restored when the block raises, so a failed
transaction leaves nothing behind. Records handed out are deep copies.
"""
from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Collection, Dict, Iterable, List, Optional

from marketplace.core.exceptions import DuplicateLeadError, DuplicatePayoutError, NotFoundError
from marketplace.services.records import (
    DeliveryAttemptRecord,
    LeadEventRecord,
    LeadRecord,
    NotificationPreferenceRecord,
    NotificationRecord,
    PayoutRecord,
    ProviderRecord,
    ServiceRequestRecord,
    SubscriptionRecord,
    utcnow,
)
from marketplace.services.state_machine import (
    LeadStatus,
    NotificationStatus,
    PayoutStatus,
    ServiceRequestStatus,
)


@dataclass
class _State:
    service_requests: Dict[int, ServiceRequestRecord] = field(default_factory=dict)
    providers: Dict[int, ProviderRecord] = field(default_factory=dict)
    subscriptions: Dict[int, SubscriptionRecord] = field(default_factory=dict)
    leads: Dict[int, LeadRecord] = field(default_factory=dict)
    lead_events: List[LeadEventRecord] = field(default_factory=list)
    payouts: Dict[int, PayoutRecord] = field(default_factory=dict)
    notifications: Dict[int, NotificationRecord] = field(default_factory=dict)
    attempts: List[DeliveryAttemptRecord] = field(default_factory=list)
    preferences: Dict[int, NotificationPreferenceRecord] = field(default_factory=dict)
    sequences: Dict[str, int] = field(default_factory=dict)

    def next_id(self, name: str) -> int:
        self.sequences[name] = self.sequences.get(name, 0) + 1
        return self.sequences[name]


def _apply(record: Any, changes: Dict[str, Any]) -> None:
    for key, value in changes.items():
        if not hasattr(record, key):
            raise AttributeError(f"{type(record).__name__} has no field {key!r}")
        setattr(record, key, value)
    if hasattr(record, "updated_at"):
        record.updated_at = utcnow()


class MemoryTransaction:
    def __init__(self, state: _State):
        self._state = state

    # Service requests

    async def add_service_request(self, record: ServiceRequestRecord) -> ServiceRequestRecord:
        stored = copy.deepcopy(record)
        stored.id = self._state.next_id("service_requests")
        self._state.service_requests[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_service_request(self, service_request_id: int) -> Optional[ServiceRequestRecord]:
        record = self._state.service_requests.get(service_request_id)
        return copy.deepcopy(record) if record else None

    async def update_service_request(
        self,
        service_request_id: int,
        expected: Optional[Collection[ServiceRequestStatus]] = None,
        **changes: Any,
    ) -> Optional[ServiceRequestRecord]:
        record = self._state.service_requests.get(service_request_id)
        if record is None or (expected is not None and record.status not in expected):
            return None
        _apply(record, changes)
        return copy.deepcopy(record)

    async def lock_service_request(self, service_request_id: int) -> Optional[ServiceRequestRecord]:
        # Transactions already run one at a time
        return await self.get_service_request(service_request_id)

    async def claim_service_request(self, service_request_id: int, lead_id: int) -> bool:
        record = self._state.service_requests.get(service_request_id)
        if record is None or record.accepted_lead_id is not None:
            return False
        _apply(record, {"accepted_lead_id": lead_id})
        return True

    async def release_service_request(self, service_request_id: int, lead_id: int) -> bool:
        record = self._state.service_requests.get(service_request_id)
        if record is None or record.accepted_lead_id != lead_id:
            return False
        _apply(record, {"accepted_lead_id": None})
        return True

    async def list_unaccepted_requests(
        self,
        statuses: Collection[ServiceRequestStatus],
        created_before: datetime,
        limit: int = 100,
    ) -> List[ServiceRequestRecord]:
        matches = [
            record
            for record in self._state.service_requests.values()
            if record.status in statuses
            and record.accepted_lead_id is None
            and record.created_at <= created_before
        ]
        matches.sort(key=lambda record: (record.created_at, record.id))
        return copy.deepcopy(matches[:limit])

    # Providers and subscriptions

    async def add_provider(self, record: ProviderRecord) -> ProviderRecord:
        self._state.providers[record.id] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def get_provider(self, provider_id: int) -> Optional[ProviderRecord]:
        record = self._state.providers.get(provider_id)
        return copy.deepcopy(record) if record else None

    async def list_providers_for_category(self, category_id: int) -> List[ProviderRecord]:
        return copy.deepcopy(
            [record for record in self._state.providers.values() if category_id in record.category_ids]
        )

    async def set_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        stored = copy.deepcopy(record)
        if stored.id is None:
            stored.id = self._state.next_id("subscriptions")
        self._state.subscriptions[stored.provider_id] = stored
        return copy.deepcopy(stored)

    async def list_subscriptions(self, provider_ids: Iterable[int]) -> List[SubscriptionRecord]:
        wanted = set(provider_ids)
        return copy.deepcopy(
            [record for pid, record in self._state.subscriptions.items() if pid in wanted]
        )

    async def count_recent_leads(self, provider_ids: Iterable[int], since: datetime) -> Dict[int, int]:
        counts = {pid: 0 for pid in provider_ids}
        for lead in self._state.leads.values():
            if lead.provider_id in counts and lead.created_at >= since:
                counts[lead.provider_id] += 1
        return counts

    # Leads

    async def add_lead(self, record: LeadRecord) -> LeadRecord:
        for lead in self._state.leads.values():
            if lead.service_request_id == record.service_request_id and lead.provider_id == record.provider_id:
                raise DuplicateLeadError(record.service_request_id, record.provider_id)
        stored = copy.deepcopy(record)
        stored.id = self._state.next_id("leads")
        self._state.leads[stored.id] = stored
        self._state.lead_events.append(
            LeadEventRecord(
                lead_id=stored.id,
                from_status=None,
                to_status=stored.status,
                id=self._state.next_id("lead_events"),
            )
        )
        return copy.deepcopy(stored)

    async def get_lead(self, lead_id: int) -> Optional[LeadRecord]:
        record = self._state.leads.get(lead_id)
        return copy.deepcopy(record) if record else None

    async def list_leads_for_request(self, service_request_id: int) -> List[LeadRecord]:
        leads = [lead for lead in self._state.leads.values() if lead.service_request_id == service_request_id]
        leads.sort(key=lambda lead: (lead.rank_position, lead.id))
        return copy.deepcopy(leads)

    async def transition_lead(
        self,
        lead_id: int,
        expected: Collection[LeadStatus],
        new_status: LeadStatus,
        reason: Optional[str] = None,
        **changes: Any,
    ) -> Optional[LeadRecord]:
        record = self._state.leads.get(lead_id)
        if record is None or record.status not in expected:
            return None
        previous = record.status
        _apply(record, dict(changes, status=new_status))
        self._state.lead_events.append(
            LeadEventRecord(
                lead_id=lead_id,
                from_status=previous,
                to_status=new_status,
                reason=reason,
                id=self._state.next_id("lead_events"),
            )
        )
        return copy.deepcopy(record)

    async def update_lead(
        self,
        lead_id: int,
        expected: Collection[LeadStatus],
        **changes: Any,
    ) -> Optional[LeadRecord]:
        record = self._state.leads.get(lead_id)
        if record is None or record.status not in expected:
            return None
        _apply(record, changes)
        return copy.deepcopy(record)

    async def list_lead_events(self, lead_id: int) -> List[LeadEventRecord]:
        return copy.deepcopy([event for event in self._state.lead_events if event.lead_id == lead_id])

    # Payouts

    async def add_payout(self, record: PayoutRecord) -> PayoutRecord:
        if record.lead_id in self._state.payouts:
            raise DuplicatePayoutError(record.lead_id)
        stored = copy.deepcopy(record)
        stored.id = self._state.next_id("payouts")
        self._state.payouts[stored.lead_id] = stored
        return copy.deepcopy(stored)

    async def get_payout(self, lead_id: int) -> Optional[PayoutRecord]:
        record = self._state.payouts.get(lead_id)
        return copy.deepcopy(record) if record else None

    async def transition_payout(
        self,
        lead_id: int,
        expected: Collection[PayoutStatus],
        new_status: PayoutStatus,
        expected_attempts: Optional[int] = None,
        **changes: Any,
    ) -> Optional[PayoutRecord]:
        record = self._state.payouts.get(lead_id)
        if record is None or record.status not in expected:
            return None
        if expected_attempts is not None and record.attempts != expected_attempts:
            return None
        _apply(record, dict(changes, status=new_status))
        return copy.deepcopy(record)

    async def list_due_payouts(self, now: datetime, limit: int = 100) -> List[PayoutRecord]:
        due = [
            record
            for record in self._state.payouts.values()
            if record.status == PayoutStatus.PENDING
            or (
                record.status == PayoutStatus.FAILED
                and record.attempts < record.max_attempts
                and (record.next_retry_at is None or record.next_retry_at <= now)
            )
        ]
        due.sort(key=lambda record: record.id)
        return copy.deepcopy(due[:limit])

    # Notifications

    async def add_notification(self, record: NotificationRecord) -> NotificationRecord:
        stored = copy.deepcopy(record)
        stored.id = self._state.next_id("notifications")
        self._state.notifications[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_notification(self, notification_id: int) -> Optional[NotificationRecord]:
        record = self._state.notifications.get(notification_id)
        return copy.deepcopy(record) if record else None

    async def update_notification(
        self,
        notification_id: int,
        expected: Collection[NotificationStatus],
        expected_retry_count: Optional[int] = None,
        due_before: Optional[datetime] = None,
        **changes: Any,
    ) -> Optional[NotificationRecord]:
        record = self._state.notifications.get(notification_id)
        if record is None or record.status not in expected:
            return None
        if expected_retry_count is not None and record.retry_count != expected_retry_count:
            return None
        if due_before is not None and record.next_attempt_at is not None and record.next_attempt_at > due_before:
            return None
        _apply(record, changes)
        return copy.deepcopy(record)

    async def list_due_notifications(self, now: datetime, limit: int = 100) -> List[NotificationRecord]:
        due = [
            record
            for record in self._state.notifications.values()
            if record.status in (NotificationStatus.PENDING, NotificationStatus.RETRYING)
            and (record.next_attempt_at is None or record.next_attempt_at <= now)
        ]
        due.sort(key=lambda record: (record.next_attempt_at or record.created_at, record.id))
        return copy.deepcopy(due[:limit])

    async def list_notifications(
        self,
        status: Optional[NotificationStatus] = None,
        lead_id: Optional[int] = None,
        service_request_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[NotificationRecord]:
        records = [
            record
            for record in self._state.notifications.values()
            if (status is None or record.status == status)
            and (lead_id is None or record.lead_id == lead_id)
            and (service_request_id is None or record.service_request_id == service_request_id)
        ]
        records.sort(key=lambda record: record.id)
        return copy.deepcopy(records[:limit])

    async def add_delivery_attempt(self, record: DeliveryAttemptRecord) -> DeliveryAttemptRecord:
        if record.notification_id not in self._state.notifications:
            raise NotFoundError("Notification not found", details={"notification_id": record.notification_id})
        stored = copy.deepcopy(record)
        stored.id = self._state.next_id("attempts")
        self._state.attempts.append(stored)
        return copy.deepcopy(stored)

    async def list_delivery_attempts(self, notification_id: int) -> List[DeliveryAttemptRecord]:
        return copy.deepcopy([a for a in self._state.attempts if a.notification_id == notification_id])

    # Notification preferences

    async def get_notification_preference(self, user_id: int) -> Optional[NotificationPreferenceRecord]:
        record = self._state.preferences.get(user_id)
        return copy.deepcopy(record) if record else None

    async def get_notification_preference_by_token(self, token: str) -> Optional[NotificationPreferenceRecord]:
        for record in self._state.preferences.values():
            if record.unsubscribe_token == token:
                return copy.deepcopy(record)
        return None

    async def set_notification_preference(self, record: NotificationPreferenceRecord) -> NotificationPreferenceRecord:
        stored = copy.deepcopy(record)
        existing = self._state.preferences.get(stored.user_id)
        stored.id = existing.id if existing else self._state.next_id("preferences")
        stored.updated_at = utcnow()
        self._state.preferences[stored.user_id] = stored
        return copy.deepcopy(stored)


class MemoryStore:
    """Process-local store; state lives as long as the instance."""

    def __init__(self) -> None:
        self._state = _State()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        async with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield MemoryTransaction(self._state)
            except BaseException:
                self._state = snapshot
                raise

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "backend": "memory",
            "service_requests": len(self._state.service_requests),
            "leads": len(self._state.leads),
        }

    async def close(self) -> None:
        return None
