"""
Persistence interface used by the lifecycle, payout and notification services.

Two backends implement it: ``MemoryStore`` for development and tests and
``SqlAlchemyStore`` for PostgreSQL. All mutations go through a transaction
object; conditional updates return ``None`` when the expected status no
longer holds so callers can report a lost race instead of overwriting it.

Lock order inside a transaction: service request row, then its lead rows,
then the payout row.
"""
from __future__ import annotations

from datetime import datetime
from typing import (
    Any,
    AsyncContextManager,
    Collection,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
)

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
)
from marketplace.services.state_machine import (
    LeadStatus,
    NotificationStatus,
    PayoutStatus,
    ServiceRequestStatus,
)


class StoreTransaction(Protocol):
    # Service requests
    async def add_service_request(self, record: ServiceRequestRecord) -> ServiceRequestRecord: ...

    async def get_service_request(self, service_request_id: int) -> Optional[ServiceRequestRecord]: ...

    async def update_service_request(
        self,
        service_request_id: int,
        expected: Optional[Collection[ServiceRequestStatus]] = None,
        **changes: Any,
    ) -> Optional[ServiceRequestRecord]: ...

    async def lock_service_request(self, service_request_id: int) -> Optional[ServiceRequestRecord]:
        """Read the request and hold its row until commit. Taken before any lead row of the request."""
        ...

    async def claim_service_request(self, service_request_id: int, lead_id: int) -> bool: ...

    async def release_service_request(self, service_request_id: int, lead_id: int) -> bool: ...

    async def list_unaccepted_requests(
        self,
        statuses: Collection[ServiceRequestStatus],
        created_before: datetime,
        limit: int = 100,
    ) -> List[ServiceRequestRecord]: ...

    # Providers and subscriptions
    async def add_provider(self, record: ProviderRecord) -> ProviderRecord: ...

    async def get_provider(self, provider_id: int) -> Optional[ProviderRecord]: ...

    async def list_providers_for_category(self, category_id: int) -> List[ProviderRecord]: ...

    async def set_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord: ...

    async def list_subscriptions(self, provider_ids: Iterable[int]) -> List[SubscriptionRecord]: ...

    async def count_recent_leads(self, provider_ids: Iterable[int], since: datetime) -> Dict[int, int]: ...

    # Leads
    async def add_lead(self, record: LeadRecord) -> LeadRecord: ...

    async def get_lead(self, lead_id: int) -> Optional[LeadRecord]: ...

    async def list_leads_for_request(self, service_request_id: int) -> List[LeadRecord]: ...

    async def transition_lead(
        self,
        lead_id: int,
        expected: Collection[LeadStatus],
        new_status: LeadStatus,
        reason: Optional[str] = None,
        **changes: Any,
    ) -> Optional[LeadRecord]: ...

    async def update_lead(
        self,
        lead_id: int,
        expected: Collection[LeadStatus],
        **changes: Any,
    ) -> Optional[LeadRecord]: ...

    async def list_lead_events(self, lead_id: int) -> List[LeadEventRecord]: ...

    # Payouts
    async def add_payout(self, record: PayoutRecord) -> PayoutRecord: ...

    async def get_payout(self, lead_id: int) -> Optional[PayoutRecord]: ...

    async def transition_payout(
        self,
        lead_id: int,
        expected: Collection[PayoutStatus],
        new_status: PayoutStatus,
        expected_attempts: Optional[int] = None,
        **changes: Any,
    ) -> Optional[PayoutRecord]: ...

    async def list_due_payouts(self, now: datetime, limit: int = 100) -> List[PayoutRecord]: ...

    # Notifications
    async def add_notification(self, record: NotificationRecord) -> NotificationRecord: ...

    async def get_notification(self, notification_id: int) -> Optional[NotificationRecord]: ...

    async def update_notification(
        self,
        notification_id: int,
        expected: Collection[NotificationStatus],
        expected_retry_count: Optional[int] = None,
        due_before: Optional[datetime] = None,
        **changes: Any,
    ) -> Optional[NotificationRecord]: ...

    async def list_due_notifications(self, now: datetime, limit: int = 100) -> List[NotificationRecord]: ...

    async def list_notifications(
        self,
        status: Optional[NotificationStatus] = None,
        lead_id: Optional[int] = None,
        service_request_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[NotificationRecord]: ...

    async def add_delivery_attempt(self, record: DeliveryAttemptRecord) -> DeliveryAttemptRecord: ...

    async def list_delivery_attempts(self, notification_id: int) -> List[DeliveryAttemptRecord]: ...

    async def get_notification_preference(self, user_id: int) -> Optional[NotificationPreferenceRecord]: ...

    async def get_notification_preference_by_token(self, token: str) -> Optional[NotificationPreferenceRecord]: ...

    async def set_notification_preference(self, record: NotificationPreferenceRecord) -> NotificationPreferenceRecord: ...


class Store(Protocol):
    def transaction(self) -> AsyncContextManager[StoreTransaction]: ...

    async def health_check(self) -> Dict[str, Any]: ...

    async def close(self) -> None: ...
