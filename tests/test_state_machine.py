import pytest

from marketplace.core.exceptions import InvalidTransitionError
from marketplace.services.state_machine import (
    LIVE_LEAD_STATUSES,
    TERMINAL_LEAD_STATUSES,
    LeadStatus,
    NotificationStatus,
    PayoutStatus,
    ServiceRequestStatus,
    lead_machine,
    notification_machine,
    payout_machine,
    service_request_machine,
)


def test_lead_happy_path_is_allowed():
    path = [
        LeadStatus.CREATED,
        LeadStatus.NOTIFIED,
        LeadStatus.VIEWED,
        LeadStatus.ACCEPTED,
        LeadStatus.IN_PROGRESS,
        LeadStatus.COMPLETED,
        LeadStatus.APPROVED,
        LeadStatus.CLOSED,
    ]
    for current, target in zip(path, path[1:]):
        assert lead_machine.can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (LeadStatus.CREATED, LeadStatus.ACCEPTED),
        (LeadStatus.NOTIFIED, LeadStatus.ACCEPTED),
        (LeadStatus.ACCEPTED, LeadStatus.COMPLETED),
        (LeadStatus.DECLINED, LeadStatus.ACCEPTED),
        (LeadStatus.CLOSED, LeadStatus.CANCELLED),
        (LeadStatus.CANCELLED, LeadStatus.NOTIFIED),
    ],
)
def test_lead_skips_and_exits_from_terminal_are_rejected(current, target):
    assert not lead_machine.can_transition(current, target)
    with pytest.raises(InvalidTransitionError) as exc_info:
        lead_machine.ensure(7, current, target)
    assert exc_info.value.status_code == 409
    assert exc_info.value.details == {"entity": "lead", "id": 7, "from": current.value, "to": target.value}


def test_every_live_lead_status_can_be_cancelled():
    for status in LIVE_LEAD_STATUSES:
        assert lead_machine.can_transition(status, LeadStatus.CANCELLED)


def test_terminal_lead_statuses():
    assert TERMINAL_LEAD_STATUSES == {LeadStatus.DECLINED, LeadStatus.CLOSED, LeadStatus.CANCELLED}
    assert LIVE_LEAD_STATUSES.isdisjoint(TERMINAL_LEAD_STATUSES)


def test_accepts_raw_string_values():
    assert lead_machine.can_transition("viewed", "accepted")
    assert not lead_machine.can_transition("viewed", "not-a-status")


def test_service_request_transitions():
    assert service_request_machine.can_transition(ServiceRequestStatus.UNASSIGNED, ServiceRequestStatus.LEAD_ASSIGNED)
    assert service_request_machine.can_transition(ServiceRequestStatus.APPROVED, ServiceRequestStatus.CLOSED)
    assert not service_request_machine.can_transition(ServiceRequestStatus.APPROVED, ServiceRequestStatus.CANCELLED)
    assert service_request_machine.is_terminal(ServiceRequestStatus.CANCELLED)
    assert service_request_machine.is_terminal(ServiceRequestStatus.CLOSED)


def test_payout_transitions():
    assert payout_machine.can_transition(PayoutStatus.PENDING, PayoutStatus.PROCESSING)
    assert payout_machine.can_transition(PayoutStatus.FAILED, PayoutStatus.PROCESSING)
    assert not payout_machine.can_transition(PayoutStatus.PENDING, PayoutStatus.COMPLETED)
    assert payout_machine.is_terminal(PayoutStatus.COMPLETED)


def test_notification_transitions():
    assert notification_machine.can_transition(NotificationStatus.RETRYING, NotificationStatus.RETRYING)
    assert not notification_machine.can_transition(NotificationStatus.SENT, NotificationStatus.RETRYING)
    assert notification_machine.sources_of(NotificationStatus.SENT) == {
        NotificationStatus.PENDING,
        NotificationStatus.RETRYING,
    }
