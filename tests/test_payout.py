from decimal import Decimal

import pytest

from conftest import add_provider, completed_lead
from marketplace.core.exceptions import NotFoundError, ValidationError
from marketplace.services.payout_engine import compute_payout
from marketplace.services.records import PlanTerms, PlanTier
from marketplace.services.state_machine import LeadStatus, PayoutStatus, ServiceRequestStatus


class TestComputePayout:
    def test_default_split(self):
        split = compute_payout(Decimal("100.00"), Decimal("0.10"))
        assert split.provider_payout_amount == Decimal("90.00")
        assert split.platform_fee_amount == Decimal("10.00")
        assert split.total_amount == Decimal("100.00")

    @pytest.mark.parametrize(
        "total,rate,fee",
        [
            (Decimal("10.05"), Decimal("0.10"), Decimal("1.01")),
            (Decimal("33.35"), Decimal("0.15"), Decimal("5.00")),
            (Decimal("0.01"), Decimal("0.10"), Decimal("0.00")),
            (Decimal("250"), Decimal("0"), Decimal("0.00")),
            (Decimal("250"), Decimal("1"), Decimal("250.00")),
        ],
    )
    def test_fee_rounds_half_up_and_parts_sum_to_total(self, total, rate, fee):
        split = compute_payout(total, rate)
        assert split.platform_fee_amount == fee
        assert split.provider_payout_amount + split.platform_fee_amount == split.total_amount

    def test_minimum_fee_is_applied_and_capped_at_total(self):
        assert compute_payout(Decimal("20.00"), Decimal("0.01"), Decimal("1.00")).platform_fee_amount == Decimal("1.00")
        tiny = compute_payout(Decimal("0.50"), Decimal("0.10"), Decimal("1.00"))
        assert tiny.platform_fee_amount == Decimal("0.50")
        assert tiny.provider_payout_amount == Decimal("0.00")

    @pytest.mark.parametrize("total,rate", [(Decimal("0"), Decimal("0.1")), (Decimal("-5"), Decimal("0.1")), (Decimal("10"), Decimal("1.5"))])
    def test_invalid_input(self, total, rate):
        with pytest.raises(ValidationError):
            compute_payout(total, rate)


@pytest.mark.asyncio
async def test_approval_creates_pending_payout(marketplace, three_providers, request_input):
    _, lead = await completed_lead(marketplace, request_input)

    payout = await marketplace.approve_lead(lead.id)

    assert payout.status == PayoutStatus.PENDING
    assert payout.total_amount == Decimal("100.00")
    assert payout.provider_payout_amount == Decimal("90.00")
    assert payout.platform_fee_amount == Decimal("10.00")
    assert payout.fee_rate == Decimal("0.10")
    assert payout.attempts == 0
    assert payout.captured_at is not None


@pytest.mark.asyncio
async def test_plan_fee_rate_is_used(marketplace, store, request_input):
    await add_provider(store, 1, terms=PlanTerms(tier=PlanTier.PREMIUM, platform_fee_rate=Decimal("0.05")))
    _, lead = await completed_lead(marketplace, request_input, price=Decimal("200.00"))

    payout = await marketplace.approve_lead(lead.id)

    assert payout.fee_rate == Decimal("0.05")
    assert payout.platform_fee_amount == Decimal("10.00")
    assert payout.provider_payout_amount == Decimal("190.00")


@pytest.mark.asyncio
async def test_successful_transfer_closes_lead_and_request(marketplace, three_providers, request_input, processor, channel):
    request, lead = await completed_lead(marketplace, request_input)
    await marketplace.approve_lead(lead.id)

    payout = await marketplace.process_payout(lead.id)

    assert payout.status == PayoutStatus.COMPLETED
    assert payout.attempts == 1
    assert payout.external_transfer_id == "tr_1"
    assert processor.transfers == [
        {"amount": Decimal("90.00"), "destination": "acct_1", "idempotency_key": f"payout-{lead.id}-1"}
    ]
    lead = await marketplace.lifecycle.get_lead(lead.id)
    assert lead.status == LeadStatus.CLOSED
    request, _ = await marketplace.service_request_with_leads(request.id)
    assert request.status == ServiceRequestStatus.CLOSED

    # Completed payouts are not processed again
    again = await marketplace.process_payout(lead.id)
    assert again.status == PayoutStatus.COMPLETED
    assert len(processor.transfers) == 1


@pytest.mark.asyncio
async def test_failed_transfer_waits_for_retry_delay(marketplace, three_providers, request_input, processor, clock):
    processor.fail_transfers = 1
    _, lead = await completed_lead(marketplace, request_input)
    await marketplace.approve_lead(lead.id)

    failed = await marketplace.process_payout(lead.id)
    assert failed.status == PayoutStatus.FAILED
    assert failed.attempts == 1
    assert failed.last_error == "card_declined"
    assert failed.next_retry_at == clock() + marketplace.payouts.retry_delay
    lead_after = await marketplace.lifecycle.get_lead(lead.id)
    assert lead_after.status == LeadStatus.APPROVED

    assert await marketplace.payouts.process_due() == []

    clock.advance(seconds=301)
    results = await marketplace.payouts.process_due()
    assert [payout.status for payout in results] == [PayoutStatus.COMPLETED]
    assert results[0].attempts == 2
    assert results[0].last_error is None


@pytest.mark.asyncio
async def test_retries_stop_at_max_attempts(marketplace, three_providers, request_input, processor, clock):
    processor.fail_transfers = 10
    _, lead = await completed_lead(marketplace, request_input)
    await marketplace.approve_lead(lead.id)

    for _ in range(3):
        payout = await marketplace.process_payout(lead.id)
        clock.advance(seconds=301)
    assert payout.status == PayoutStatus.FAILED
    assert payout.attempts == 3

    # Exhausted: automatic processing leaves it alone
    assert await marketplace.payouts.process_due() == []
    unchanged = await marketplace.process_payout(lead.id)
    assert unchanged.attempts == 3

    async with marketplace.store.transaction() as tx:
        notices = await tx.list_notifications(lead_id=lead.id)
    assert [record.message_type for record in notices].count("payout_failed") == 1


@pytest.mark.asyncio
async def test_manual_redrive_ignores_attempt_bound(marketplace, three_providers, request_input, processor, clock):
    processor.fail_transfers = 3
    _, lead = await completed_lead(marketplace, request_input)
    await marketplace.approve_lead(lead.id)
    for _ in range(3):
        await marketplace.process_payout(lead.id)
        clock.advance(seconds=301)

    payout = await marketplace.process_payout(lead.id, manual=True)

    assert payout.status == PayoutStatus.COMPLETED
    assert payout.attempts == 4


@pytest.mark.asyncio
async def test_missing_payout_account_fails_attempt(marketplace, store, request_input, processor):
    await add_provider(store, 1, payout_account_id=None)
    _, lead = await completed_lead(marketplace, request_input)
    await marketplace.approve_lead(lead.id)

    payout = await marketplace.process_payout(lead.id)

    assert payout.status == PayoutStatus.FAILED
    assert payout.last_error == "Provider has no payout account"
    assert processor.transfers == []


@pytest.mark.asyncio
async def test_unknown_payout(marketplace):
    with pytest.raises(NotFoundError):
        await marketplace.get_payout(12345)
