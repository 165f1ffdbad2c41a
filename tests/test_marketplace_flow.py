from dataclasses import replace
from decimal import Decimal

import pytest

from conftest import add_provider
from marketplace.core.exceptions import (
    BusinessRuleError,
    NoEligibleProvidersError,
    NotFoundError,
    ValidationError,
)
from marketplace.services.state_machine import (
    LeadStatus,
    NotificationStatus,
    PayoutStatus,
    ServiceRequestStatus,
)


async def notification_types(store, **filters):
    async with store.transaction() as tx:
        return [record.message_type for record in await tx.list_notifications(**filters)]


@pytest.mark.asyncio
async def test_request_to_payout(marketplace, store, three_providers, request_input, channel, processor):
    request = await marketplace.create_service_request(request_input)
    assert request.status == ServiceRequestStatus.LEAD_ASSIGNED

    _, leads = await marketplace.service_request_with_leads(request.id)
    assert [lead.rank_position for lead in leads] == [1, 2, 3]
    assert all(lead.status == LeadStatus.NOTIFIED for lead in leads)
    assert all(lead.lead_cost == Decimal("20.00") for lead in leads)

    summary = await marketplace.dispatcher.process_due()
    assert summary.sent == 4
    recipients = sorted(message["recipient"] for message in channel.sent)
    assert recipients == [
        "customer@example.com",
        "provider1@example.com",
        "provider2@example.com",
        "provider3@example.com",
    ]

    winner = leads[0]
    await marketplace.view_lead(winner.id)
    await marketplace.respond_to_lead(winner.id, "accept")
    await marketplace.mark_in_progress(winner.id)
    await marketplace.accept_proposal(winner.id, Decimal("150.00"), "pi_abc")
    await marketplace.mark_completed(winner.id)
    payout = await marketplace.approve_lead(winner.id)
    assert payout.provider_payout_amount == Decimal("135.00")

    payout = await marketplace.process_payout(winner.id)
    assert payout.status == PayoutStatus.COMPLETED
    assert processor.captures == ["pi_abc"]

    request, leads = await marketplace.service_request_with_leads(request.id)
    assert request.status == ServiceRequestStatus.CLOSED
    assert [lead.status for lead in leads] == [LeadStatus.CLOSED, LeadStatus.CANCELLED, LeadStatus.CANCELLED]

    assert await notification_types(store, lead_id=winner.id) == [
        "new_lead",
        "lead_accepted_customer",
        "lead_accepted_provider",
        "work_started",
        "work_completed",
        "payout_scheduled",
        "payout_completed",
    ]
    assert await notification_types(store, lead_id=leads[1].id) == ["new_lead", "lead_no_longer_available"]

    summary = await marketplace.dispatcher.process_due()
    assert summary.failed == 0
    history = await marketplace.lead_notifications(winner.id)
    assert all(record.status == NotificationStatus.SENT for record, _ in history)
    assert all(len(attempts) == 1 for _, attempts in history)


@pytest.mark.asyncio
async def test_request_without_providers_is_unassigned(marketplace, store, request_input):
    request = await marketplace.create_service_request(request_input)

    assert request.status == ServiceRequestStatus.UNASSIGNED
    _, leads = await marketplace.service_request_with_leads(request.id)
    assert leads == []
    assert await notification_types(store, service_request_id=request.id) == [
        "request_created",
        "no_provider_available",
    ]


@pytest.mark.asyncio
async def test_request_needs_category(marketplace, request_input):
    with pytest.raises(ValidationError):
        await marketplace.create_service_request(replace(request_input, category_id=None))


@pytest.mark.asyncio
async def test_reassign_offers_request_to_new_providers(marketplace, store, three_providers, request_input):
    request = await marketplace.create_service_request(request_input)
    _, leads = await marketplace.service_request_with_leads(request.id)
    for lead in leads:
        await marketplace.respond_to_lead(lead.id, "decline", reason="too_far")

    await add_provider(store, 4)
    new_leads = await marketplace.reassign_providers(request.id)

    assert [lead.provider_id for lead in new_leads] == [4]
    assert new_leads[0].status == LeadStatus.NOTIFIED
    request, all_leads = await marketplace.service_request_with_leads(request.id)
    assert request.status == ServiceRequestStatus.LEAD_ASSIGNED
    assert len(all_leads) == 4


@pytest.mark.asyncio
async def test_reassign_rules(marketplace, store, three_providers, request_input):
    request = await marketplace.create_service_request(request_input)

    # Everyone nearby already has a lead
    with pytest.raises(NoEligibleProvidersError):
        await marketplace.reassign_providers(request.id)

    _, leads = await marketplace.service_request_with_leads(request.id)
    await marketplace.respond_to_lead(leads[0].id, "accept")
    with pytest.raises(BusinessRuleError) as exc_info:
        await marketplace.reassign_providers(request.id)
    assert exc_info.value.code == "request_not_reassignable"

    with pytest.raises(NotFoundError):
        await marketplace.reassign_providers(4040)


@pytest.mark.asyncio
async def test_stale_sweep(marketplace, store, three_providers, request_input, clock):
    request = await marketplace.create_service_request(request_input)

    summary = await marketplace.reassign_stale_requests()
    assert summary.examined == 0

    clock.advance(hours=25)
    summary = await marketplace.reassign_stale_requests()
    assert summary.examined == 1
    assert summary.unmatched == 1

    await add_provider(store, 4)
    summary = await marketplace.reassign_stale_requests()
    assert summary.reassigned == 1
    assert len(summary.lead_ids) == 1

    # The new lead gets a full window before the next sweep
    summary = await marketplace.reassign_stale_requests()
    assert summary.skipped == 1
    assert summary.reassigned == 0

    _, leads = await marketplace.service_request_with_leads(request.id)
    assert sorted(lead.provider_id for lead in leads) == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_accepted_requests_are_not_swept(marketplace, store, three_providers, request_input, clock):
    request = await marketplace.create_service_request(request_input)
    _, leads = await marketplace.service_request_with_leads(request.id)
    await marketplace.respond_to_lead(leads[0].id, "accept")
    await add_provider(store, 4)

    clock.advance(hours=48)
    summary = await marketplace.reassign_stale_requests()

    assert summary.examined == 0


@pytest.mark.asyncio
async def test_acceptance_is_texted_to_customer_phone(marketplace, store, three_providers, request_input):
    request = await marketplace.create_service_request(replace(request_input, customer_phone="+15125550100"))
    _, leads = await marketplace.service_request_with_leads(request.id)
    await marketplace.respond_to_lead(leads[0].id, "accept")

    async with store.transaction() as tx:
        texts = [record for record in await tx.list_notifications(lead_id=leads[0].id) if record.channel == "sms"]
    assert [(record.recipient, record.message_type) for record in texts] == [
        ("+15125550100", "lead_accepted_customer")
    ]

    await marketplace.dispatcher.process_due()
    sms = marketplace.dispatcher.channels["sms"]
    assert [message["recipient"] for message in sms.sent] == ["+15125550100"]
