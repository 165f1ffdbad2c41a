from __future__ import annotations

from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Type

from marketplace.core.exceptions import InvalidTransitionError


class LeadStatus(str, Enum):
    CREATED = "created"
    NOTIFIED = "notified"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    APPROVED = "approved"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class ServiceRequestStatus(str, Enum):
    REQUEST_CREATED = "request_created"
    LEAD_ASSIGNED = "lead_assigned"
    UNASSIGNED = "unassigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    APPROVED = "approved"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RETRYING = "retrying"


class StateMachine:
    """Table driven transition checks for one status enum."""

    def __init__(self, entity: str, status_type: Type[Enum], transitions: Dict[Any, List[Any]]):
        self.entity = entity
        self.status_type = status_type
        self.transitions: Dict[Any, FrozenSet[Any]] = {
            status: frozenset(transitions.get(status, [])) for status in status_type
        }

    def can_transition(self, current: Any, target: Any) -> bool:
        try:
            curr = self.status_type(current)
            new = self.status_type(target)
        except ValueError:
            return False
        return new in self.transitions[curr]

    def ensure(self, entity_id: Any, current: Any, target: Any) -> None:
        if not self.can_transition(current, target):
            raise InvalidTransitionError(self.entity, entity_id, current, target)

    def is_terminal(self, status: Any) -> bool:
        return not self.transitions[self.status_type(status)]

    def sources_of(self, target: Any) -> FrozenSet[Any]:
        """All statuses from which ``target`` is reachable in one step."""
        new = self.status_type(target)
        return frozenset(status for status, allowed in self.transitions.items() if new in allowed)

    def non_terminal(self) -> FrozenSet[Any]:
        return frozenset(status for status, allowed in self.transitions.items() if allowed)


LEAD_TRANSITIONS = {
    LeadStatus.CREATED: [LeadStatus.NOTIFIED, LeadStatus.CANCELLED],
    LeadStatus.NOTIFIED: [LeadStatus.VIEWED, LeadStatus.CANCELLED],
    LeadStatus.VIEWED: [LeadStatus.ACCEPTED, LeadStatus.DECLINED, LeadStatus.CANCELLED],
    LeadStatus.ACCEPTED: [LeadStatus.IN_PROGRESS, LeadStatus.CANCELLED],
    LeadStatus.IN_PROGRESS: [LeadStatus.COMPLETED, LeadStatus.CANCELLED],
    LeadStatus.COMPLETED: [LeadStatus.APPROVED, LeadStatus.CANCELLED],
    LeadStatus.APPROVED: [LeadStatus.CLOSED, LeadStatus.CANCELLED],
    LeadStatus.DECLINED: [],
    LeadStatus.CLOSED: [],
    LeadStatus.CANCELLED: [],
}

SERVICE_REQUEST_TRANSITIONS = {
    ServiceRequestStatus.REQUEST_CREATED: [
        ServiceRequestStatus.LEAD_ASSIGNED,
        ServiceRequestStatus.UNASSIGNED,
        ServiceRequestStatus.CANCELLED,
    ],
    ServiceRequestStatus.UNASSIGNED: [ServiceRequestStatus.LEAD_ASSIGNED, ServiceRequestStatus.CANCELLED],
    ServiceRequestStatus.LEAD_ASSIGNED: [
        ServiceRequestStatus.IN_PROGRESS,
        ServiceRequestStatus.UNASSIGNED,
        ServiceRequestStatus.CANCELLED,
    ],
    ServiceRequestStatus.IN_PROGRESS: [
        ServiceRequestStatus.COMPLETED,
        ServiceRequestStatus.UNASSIGNED,
        ServiceRequestStatus.CANCELLED,
    ],
    ServiceRequestStatus.COMPLETED: [
        ServiceRequestStatus.APPROVED,
        ServiceRequestStatus.UNASSIGNED,
        ServiceRequestStatus.CANCELLED,
    ],
    ServiceRequestStatus.APPROVED: [ServiceRequestStatus.CLOSED],
    ServiceRequestStatus.CLOSED: [],
    ServiceRequestStatus.CANCELLED: [],
}

PAYOUT_TRANSITIONS = {
    PayoutStatus.PENDING: [PayoutStatus.PROCESSING],
    PayoutStatus.PROCESSING: [PayoutStatus.COMPLETED, PayoutStatus.FAILED],
    # failed -> processing is bounded by max attempts in the payout engine
    PayoutStatus.FAILED: [PayoutStatus.PROCESSING],
    PayoutStatus.COMPLETED: [],
}

NOTIFICATION_TRANSITIONS = {
    NotificationStatus.PENDING: [NotificationStatus.SENT, NotificationStatus.RETRYING, NotificationStatus.FAILED],
    NotificationStatus.RETRYING: [NotificationStatus.SENT, NotificationStatus.RETRYING, NotificationStatus.FAILED],
    NotificationStatus.SENT: [],
    NotificationStatus.FAILED: [],
}

lead_machine = StateMachine("lead", LeadStatus, LEAD_TRANSITIONS)
service_request_machine = StateMachine("service_request", ServiceRequestStatus, SERVICE_REQUEST_TRANSITIONS)
payout_machine = StateMachine("payout", PayoutStatus, PAYOUT_TRANSITIONS)
notification_machine = StateMachine("notification", NotificationStatus, NOTIFICATION_TRANSITIONS)

TERMINAL_LEAD_STATUSES = frozenset(status for status in LeadStatus if lead_machine.is_terminal(status))
LIVE_LEAD_STATUSES = lead_machine.non_terminal()

# Lead statuses past the viewing step; viewing these is a no-op.
VIEWED_OR_LATER = frozenset(
    [
        LeadStatus.VIEWED,
        LeadStatus.ACCEPTED,
        LeadStatus.IN_PROGRESS,
        LeadStatus.COMPLETED,
        LeadStatus.APPROVED,
    ]
)


def statuses(values: Iterable[Any]) -> List[str]:
    return [getattr(value, "value", value) for value in values]
