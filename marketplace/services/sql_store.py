"""
PostgreSQL store built on SQLAlchemy Core statements over the ORM tables.

Every conditional mutation is a single ``UPDATE ... WHERE status IN (...)
RETURNING`` so concurrent workers cannot both win the same transition.
Inserts that may hit a unique constraint run inside a savepoint, which keeps
the surrounding transaction usable after a duplicate is reported.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import fields
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Collection, Dict, Iterable, List, Mapping, Optional, Type

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace.core.exceptions import DuplicateLeadError, DuplicatePayoutError, NotFoundError
from marketplace.core.logging import get_structlog_logger
from marketplace.db.session import dispose_engine, get_session_factory, health_check, transaction_session
from marketplace.models import (
    DeliveryAttempt,
    Lead,
    LeadEvent,
    NotificationAudit,
    NotificationPreference,
    Payout,
    Provider,
    ServiceRequest,
    Subscription,
)
from marketplace.services.records import (
    DeclineReason,
    DeliveryAttemptRecord,
    LeadEventRecord,
    LeadRecord,
    NotificationPreferenceRecord,
    NotificationRecord,
    PayoutRecord,
    PlanTerms,
    PlanTier,
    ProviderRecord,
    ProviderStanding,
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

logger = get_structlog_logger(__name__)

service_requests = ServiceRequest.__table__
providers = Provider.__table__
subscriptions = Subscription.__table__
leads = Lead.__table__
lead_events = LeadEvent.__table__
payouts = Payout.__table__
notifications = NotificationAudit.__table__
attempts = DeliveryAttempt.__table__
preferences = NotificationPreference.__table__

_ENUMS: Dict[type, Dict[str, Type[Enum]]] = {
    ServiceRequestRecord: {"status": ServiceRequestStatus},
    ProviderRecord: {"standing": ProviderStanding},
    LeadRecord: {"status": LeadStatus, "plan_tier": PlanTier, "decline_reason": DeclineReason},
    LeadEventRecord: {"from_status": LeadStatus, "to_status": LeadStatus},
    PayoutRecord: {"status": PayoutStatus},
    NotificationRecord: {"status": NotificationStatus},
    DeliveryAttemptRecord: {},
    NotificationPreferenceRecord: {},
}


def _plain(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value.value if isinstance(value, Enum) else value for key, value in values.items()}


def _values(record: Any) -> Dict[str, Any]:
    data = {f.name: getattr(record, f.name) for f in fields(record)}
    if data.get("id") is None:
        data.pop("id", None)
    return _plain(data)


def _record(cls: type, row: Any) -> Any:
    mapping = row._mapping
    data = {f.name: mapping[f.name] for f in fields(cls) if f.name in mapping}
    for key, enum_cls in _ENUMS[cls].items():
        if data.get(key) is not None:
            data[key] = enum_cls(data[key])
    return cls(**data)


def _statuses(expected: Collection[Enum]) -> List[str]:
    return [status.value for status in expected]


def _subscription(row: Any) -> SubscriptionRecord:
    m = row._mapping
    return SubscriptionRecord(
        id=m["id"],
        provider_id=m["provider_id"],
        active=m["active"],
        current_period_end=m["current_period_end"],
        terms=PlanTerms(
            tier=PlanTier(m["tier"]),
            lead_discount_percent=m["lead_discount_percent"],
            priority_boost_points=m["priority_boost_points"],
            is_featured=m["is_featured"],
            has_advanced_analytics=m["has_advanced_analytics"],
            platform_fee_rate=m["platform_fee_rate"],
        ),
    )


def _violates(error: IntegrityError, constraint: str) -> bool:
    return constraint in str(error.orig)


class SqlTransaction:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _one(self, statement) -> Optional[Any]:
        result = await self.session.execute(statement)
        return result.first()

    async def _all(self, statement) -> List[Any]:
        result = await self.session.execute(statement)
        return list(result.all())

    # Service requests

    async def add_service_request(self, record: ServiceRequestRecord) -> ServiceRequestRecord:
        row = await self._one(insert(service_requests).values(**_values(record)).returning(service_requests))
        return _record(ServiceRequestRecord, row)

    async def get_service_request(self, service_request_id: int) -> Optional[ServiceRequestRecord]:
        row = await self._one(select(service_requests).where(service_requests.c.id == service_request_id))
        return _record(ServiceRequestRecord, row) if row else None

    async def update_service_request(
        self,
        service_request_id: int,
        expected: Optional[Collection[ServiceRequestStatus]] = None,
        **changes: Any,
    ) -> Optional[ServiceRequestRecord]:
        statement = update(service_requests).where(service_requests.c.id == service_request_id)
        if expected is not None:
            statement = statement.where(service_requests.c.status.in_(_statuses(expected)))
        row = await self._one(
            statement.values(**_plain(changes), updated_at=utcnow()).returning(service_requests)
        )
        return _record(ServiceRequestRecord, row) if row else None

    async def lock_service_request(self, service_request_id: int) -> Optional[ServiceRequestRecord]:
        row = await self._one(
            select(service_requests).where(service_requests.c.id == service_request_id).with_for_update()
        )
        return _record(ServiceRequestRecord, row) if row else None

    async def claim_service_request(self, service_request_id: int, lead_id: int) -> bool:
        row = await self._one(
            update(service_requests)
            .where(
                service_requests.c.id == service_request_id,
                service_requests.c.accepted_lead_id.is_(None),
            )
            .values(accepted_lead_id=lead_id, updated_at=utcnow())
            .returning(service_requests.c.id)
        )
        return row is not None

    async def release_service_request(self, service_request_id: int, lead_id: int) -> bool:
        row = await self._one(
            update(service_requests)
            .where(
                service_requests.c.id == service_request_id,
                service_requests.c.accepted_lead_id == lead_id,
            )
            .values(accepted_lead_id=None, updated_at=utcnow())
            .returning(service_requests.c.id)
        )
        return row is not None

    async def list_unaccepted_requests(
        self,
        statuses: Collection[ServiceRequestStatus],
        created_before: datetime,
        limit: int = 100,
    ) -> List[ServiceRequestRecord]:
        rows = await self._all(
            select(service_requests)
            .where(
                service_requests.c.status.in_(_statuses(statuses)),
                service_requests.c.accepted_lead_id.is_(None),
                service_requests.c.created_at <= created_before,
            )
            .order_by(service_requests.c.created_at, service_requests.c.id)
            .limit(limit)
        )
        return [_record(ServiceRequestRecord, row) for row in rows]

    # Providers and subscriptions

    async def add_provider(self, record: ProviderRecord) -> ProviderRecord:
        values = _values(record)
        statement = pg_insert(providers).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=[providers.c.id],
            set_={key: statement.excluded[key] for key in values if key not in ("id", "created_at")},
        )
        row = await self._one(statement.returning(providers))
        return _record(ProviderRecord, row)

    async def get_provider(self, provider_id: int) -> Optional[ProviderRecord]:
        row = await self._one(select(providers).where(providers.c.id == provider_id))
        return _record(ProviderRecord, row) if row else None

    async def list_providers_for_category(self, category_id: int) -> List[ProviderRecord]:
        rows = await self._all(
            select(providers).where(providers.c.category_ids.contains([category_id])).order_by(providers.c.id)
        )
        return [_record(ProviderRecord, row) for row in rows]

    async def set_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        values = _plain(
            {
                "provider_id": record.provider_id,
                "active": record.active,
                "current_period_end": record.current_period_end,
                "tier": record.terms.tier,
                "lead_discount_percent": record.terms.lead_discount_percent,
                "priority_boost_points": record.terms.priority_boost_points,
                "is_featured": record.terms.is_featured,
                "has_advanced_analytics": record.terms.has_advanced_analytics,
                "platform_fee_rate": record.terms.platform_fee_rate,
            }
        )
        statement = pg_insert(subscriptions).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=[subscriptions.c.provider_id],
            set_={key: statement.excluded[key] for key in values if key != "provider_id"},
        )
        row = await self._one(statement.returning(subscriptions))
        return _subscription(row)

    async def list_subscriptions(self, provider_ids: Iterable[int]) -> List[SubscriptionRecord]:
        ids = list(provider_ids)
        if not ids:
            return []
        rows = await self._all(select(subscriptions).where(subscriptions.c.provider_id.in_(ids)))
        return [_subscription(row) for row in rows]

    async def count_recent_leads(self, provider_ids: Iterable[int], since: datetime) -> Dict[int, int]:
        counts = {pid: 0 for pid in provider_ids}
        if not counts:
            return counts
        rows = await self._all(
            select(leads.c.provider_id, func.count(leads.c.id))
            .where(leads.c.provider_id.in_(list(counts)), leads.c.created_at >= since)
            .group_by(leads.c.provider_id)
        )
        for provider_id, count in rows:
            counts[provider_id] = count
        return counts

    # Leads

    async def add_lead(self, record: LeadRecord) -> LeadRecord:
        try:
            async with self.session.begin_nested():
                row = await self._one(insert(leads).values(**_values(record)).returning(leads))
        except IntegrityError as e:
            if _violates(e, "uq_leads_request_provider"):
                raise DuplicateLeadError(record.service_request_id, record.provider_id) from e
            raise
        stored = _record(LeadRecord, row)
        await self.session.execute(
            insert(lead_events).values(
                lead_id=stored.id,
                from_status=None,
                to_status=stored.status.value,
                created_at=stored.created_at,
            )
        )
        return stored

    async def get_lead(self, lead_id: int) -> Optional[LeadRecord]:
        row = await self._one(select(leads).where(leads.c.id == lead_id))
        return _record(LeadRecord, row) if row else None

    async def list_leads_for_request(self, service_request_id: int) -> List[LeadRecord]:
        rows = await self._all(
            select(leads)
            .where(leads.c.service_request_id == service_request_id)
            .order_by(leads.c.rank_position, leads.c.id)
        )
        return [_record(LeadRecord, row) for row in rows]

    async def transition_lead(
        self,
        lead_id: int,
        expected: Collection[LeadStatus],
        new_status: LeadStatus,
        reason: Optional[str] = None,
        **changes: Any,
    ) -> Optional[LeadRecord]:
        # Row lock first so the history row records the status actually replaced
        current = await self._one(
            select(leads.c.status).where(leads.c.id == lead_id).with_for_update()
        )
        if current is None or current.status not in _statuses(expected):
            return None
        row = await self._one(
            update(leads)
            .where(leads.c.id == lead_id, leads.c.status == current.status)
            .values(**_plain(changes), status=new_status.value, updated_at=utcnow())
            .returning(leads)
        )
        if row is None:
            return None
        await self.session.execute(
            insert(lead_events).values(
                lead_id=lead_id,
                from_status=current.status,
                to_status=new_status.value,
                reason=reason,
                created_at=utcnow(),
            )
        )
        return _record(LeadRecord, row)

    async def update_lead(
        self,
        lead_id: int,
        expected: Collection[LeadStatus],
        **changes: Any,
    ) -> Optional[LeadRecord]:
        row = await self._one(
            update(leads)
            .where(leads.c.id == lead_id, leads.c.status.in_(_statuses(expected)))
            .values(**_plain(changes), updated_at=utcnow())
            .returning(leads)
        )
        return _record(LeadRecord, row) if row else None

    async def list_lead_events(self, lead_id: int) -> List[LeadEventRecord]:
        rows = await self._all(
            select(lead_events).where(lead_events.c.lead_id == lead_id).order_by(lead_events.c.id)
        )
        return [_record(LeadEventRecord, row) for row in rows]

    # Payouts

    async def add_payout(self, record: PayoutRecord) -> PayoutRecord:
        try:
            async with self.session.begin_nested():
                row = await self._one(insert(payouts).values(**_values(record)).returning(payouts))
        except IntegrityError as e:
            if _violates(e, "uq_payouts_lead_id"):
                raise DuplicatePayoutError(record.lead_id) from e
            raise
        return _record(PayoutRecord, row)

    async def get_payout(self, lead_id: int) -> Optional[PayoutRecord]:
        row = await self._one(select(payouts).where(payouts.c.lead_id == lead_id))
        return _record(PayoutRecord, row) if row else None

    async def transition_payout(
        self,
        lead_id: int,
        expected: Collection[PayoutStatus],
        new_status: PayoutStatus,
        expected_attempts: Optional[int] = None,
        **changes: Any,
    ) -> Optional[PayoutRecord]:
        statement = update(payouts).where(
            payouts.c.lead_id == lead_id,
            payouts.c.status.in_(_statuses(expected)),
        )
        if expected_attempts is not None:
            statement = statement.where(payouts.c.attempts == expected_attempts)
        row = await self._one(
            statement.values(**_plain(changes), status=new_status.value, updated_at=utcnow()).returning(payouts)
        )
        return _record(PayoutRecord, row) if row else None

    async def list_due_payouts(self, now: datetime, limit: int = 100) -> List[PayoutRecord]:
        rows = await self._all(
            select(payouts)
            .where(
                or_(
                    payouts.c.status == PayoutStatus.PENDING.value,
                    and_(
                        payouts.c.status == PayoutStatus.FAILED.value,
                        payouts.c.attempts < payouts.c.max_attempts,
                        or_(payouts.c.next_retry_at.is_(None), payouts.c.next_retry_at <= now),
                    ),
                )
            )
            .order_by(payouts.c.id)
            .limit(limit)
        )
        return [_record(PayoutRecord, row) for row in rows]

    # Notifications

    async def add_notification(self, record: NotificationRecord) -> NotificationRecord:
        row = await self._one(insert(notifications).values(**_values(record)).returning(notifications))
        return _record(NotificationRecord, row)

    async def get_notification(self, notification_id: int) -> Optional[NotificationRecord]:
        row = await self._one(select(notifications).where(notifications.c.id == notification_id))
        return _record(NotificationRecord, row) if row else None

    async def update_notification(
        self,
        notification_id: int,
        expected: Collection[NotificationStatus],
        expected_retry_count: Optional[int] = None,
        due_before: Optional[datetime] = None,
        **changes: Any,
    ) -> Optional[NotificationRecord]:
        statement = update(notifications).where(
            notifications.c.id == notification_id,
            notifications.c.status.in_(_statuses(expected)),
        )
        if expected_retry_count is not None:
            statement = statement.where(notifications.c.retry_count == expected_retry_count)
        if due_before is not None:
            statement = statement.where(
                or_(notifications.c.next_attempt_at.is_(None), notifications.c.next_attempt_at <= due_before)
            )
        row = await self._one(
            statement.values(**_plain(changes), updated_at=utcnow()).returning(notifications)
        )
        return _record(NotificationRecord, row) if row else None

    async def list_due_notifications(self, now: datetime, limit: int = 100) -> List[NotificationRecord]:
        rows = await self._all(
            select(notifications)
            .where(
                notifications.c.status.in_(
                    _statuses([NotificationStatus.PENDING, NotificationStatus.RETRYING])
                ),
                or_(notifications.c.next_attempt_at.is_(None), notifications.c.next_attempt_at <= now),
            )
            .order_by(
                func.coalesce(notifications.c.next_attempt_at, notifications.c.created_at),
                notifications.c.id,
            )
            .limit(limit)
        )
        return [_record(NotificationRecord, row) for row in rows]

    async def list_notifications(
        self,
        status: Optional[NotificationStatus] = None,
        lead_id: Optional[int] = None,
        service_request_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[NotificationRecord]:
        statement = select(notifications)
        if status is not None:
            statement = statement.where(notifications.c.status == status.value)
        if lead_id is not None:
            statement = statement.where(notifications.c.lead_id == lead_id)
        if service_request_id is not None:
            statement = statement.where(notifications.c.service_request_id == service_request_id)
        rows = await self._all(statement.order_by(notifications.c.id).limit(limit))
        return [_record(NotificationRecord, row) for row in rows]

    async def add_delivery_attempt(self, record: DeliveryAttemptRecord) -> DeliveryAttemptRecord:
        try:
            async with self.session.begin_nested():
                row = await self._one(insert(attempts).values(**_values(record)).returning(attempts))
        except IntegrityError as e:
            raise NotFoundError(
                "Notification not found",
                details={"notification_id": record.notification_id},
            ) from e
        return _record(DeliveryAttemptRecord, row)

    async def list_delivery_attempts(self, notification_id: int) -> List[DeliveryAttemptRecord]:
        rows = await self._all(
            select(attempts)
            .where(attempts.c.notification_id == notification_id)
            .order_by(attempts.c.attempt_number, attempts.c.id)
        )
        return [_record(DeliveryAttemptRecord, row) for row in rows]

    # Notification preferences

    async def get_notification_preference(self, user_id: int) -> Optional[NotificationPreferenceRecord]:
        row = await self._one(select(preferences).where(preferences.c.user_id == user_id))
        return _record(NotificationPreferenceRecord, row) if row else None

    async def get_notification_preference_by_token(self, token: str) -> Optional[NotificationPreferenceRecord]:
        row = await self._one(select(preferences).where(preferences.c.unsubscribe_token == token))
        return _record(NotificationPreferenceRecord, row) if row else None

    async def set_notification_preference(self, record: NotificationPreferenceRecord) -> NotificationPreferenceRecord:
        values = _values(record)
        values.pop("id", None)
        values["updated_at"] = utcnow()
        statement = pg_insert(preferences).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=[preferences.c.user_id],
            set_={key: statement.excluded[key] for key in values if key != "user_id"},
        )
        row = await self._one(statement.returning(preferences))
        return _record(NotificationPreferenceRecord, row)


class SqlAlchemyStore:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlTransaction]:
        factory = self._session_factory or get_session_factory()
        async with transaction_session(factory) as session:
            yield SqlTransaction(session)

    async def health_check(self) -> Dict[str, Any]:
        return await health_check()

    async def close(self) -> None:
        await dispose_engine()
