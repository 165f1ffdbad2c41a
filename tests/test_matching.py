from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import add_provider, make_provider
from marketplace.core.exceptions import NoEligibleProvidersError, ValidationError
from marketplace.services.matching_engine import (
    Candidate,
    MatchingEngine,
    RankingWeights,
    rank_candidates,
)
from marketplace.services.records import (
    BASIC_TERMS,
    LeadRecord,
    PlanTerms,
    PlanTier,
    ProviderStanding,
    ServiceRequestRecord,
    utcnow,
)
from marketplace.services.subscriptions import LeadPricing, SubscriptionRegistry

PREMIUM = PlanTerms(
    tier=PlanTier.PREMIUM,
    lead_discount_percent=Decimal("50"),
    priority_boost_points=8,
    is_featured=True,
)


def make_request(**overrides):
    data = dict(
        id=500,
        customer_id=10,
        customer_email="customer@example.com",
        category_id=1,
        postal_code="78702",
        title="Fix fence",
    )
    data.update(overrides)
    return ServiceRequestRecord(**data)


@pytest.fixture
def engine(store, geocoder):
    return MatchingEngine(
        store,
        geocoder,
        SubscriptionRegistry(),
        LeadPricing(base_cost=Decimal("20.00")),
        top_n=3,
    )


@pytest.mark.asyncio
async def test_ties_broken_by_account_age(engine, store):
    now = utcnow()
    await add_provider(store, 1, created_at=now - timedelta(days=10))
    await add_provider(store, 2, created_at=now - timedelta(days=30))
    await add_provider(store, 3, created_at=now - timedelta(days=20))

    ranked = await engine.rank(make_request())

    assert [item.provider_id for item in ranked] == [2, 3, 1]
    assert [item.rank_position for item in ranked] == [1, 2, 3]
    assert all(item.score == 10.0 for item in ranked)
    assert all(item.matched_by == "distance" for item in ranked)


@pytest.mark.asyncio
async def test_subscription_boost_and_featured_rank_first(engine, store):
    await add_provider(store, 1)
    await add_provider(store, 2, terms=PREMIUM)

    ranked = await engine.rank(make_request())

    assert ranked[0].provider_id == 2
    assert ranked[0].score == 10.0 + 8 + 10.0
    assert ranked[0].lead_cost == Decimal("10.00")
    assert ranked[0].terms.tier == PlanTier.PREMIUM
    assert ranked[1].lead_cost == Decimal("20.00")


@pytest.mark.asyncio
async def test_rating_and_subcategory_add_to_score(engine, store):
    await add_provider(store, 1, rating_average=4.5)
    await add_provider(store, 2, subcategory_ids=[11])

    ranked = await engine.rank(make_request(subcategory_id=11))

    scores = {item.provider_id: item.score for item in ranked}
    assert scores == {1: 14.5, 2: 15.0}
    assert ranked[0].provider_id == 2


@pytest.mark.asyncio
async def test_recent_leads_lower_the_score(engine, store):
    await add_provider(store, 1)
    await add_provider(store, 2)
    async with store.transaction() as tx:
        for request_id in (900, 901):
            await tx.add_lead(
                LeadRecord(
                    service_request_id=request_id,
                    provider_id=1,
                    category_id=1,
                    rank_position=1,
                    score=10.0,
                    lead_cost=Decimal("20.00"),
                )
            )

    ranked = await engine.rank(make_request())

    assert [item.provider_id for item in ranked] == [2, 1]
    assert ranked[1].score == 10.0 - 2 * 2.0


@pytest.mark.asyncio
async def test_top_n_limits_selection(engine, store):
    for provider_id in range(1, 6):
        await add_provider(store, provider_id)

    ranked = await engine.rank(make_request())

    assert len(ranked) == 3
    assert len({item.provider_id for item in ranked}) == 3


@pytest.mark.asyncio
async def test_ineligible_providers_are_filtered(engine, store):
    await add_provider(store, 1)
    await add_provider(store, 2, category_ids=[2])
    await add_provider(store, 3, standing=ProviderStanding.SUSPENDED)
    await add_provider(store, 4, postal_code="10001", latitude=40.7506, longitude=-73.9972)
    await add_provider(store, 5)

    ranked = await engine.rank(make_request(), exclude_provider_ids=[5])

    assert [item.provider_id for item in ranked] == [1]


@pytest.mark.asyncio
async def test_radius_is_per_provider(engine, store):
    # 78660 is roughly 13 miles from the provider location
    await add_provider(store, 1, service_radius_miles=5.0)
    await add_provider(store, 2, service_radius_miles=20.0)

    ranked = await engine.rank(make_request(postal_code="78660"))

    assert [item.provider_id for item in ranked] == [2]
    assert 10 < ranked[0].distance_miles < 16


@pytest.mark.asyncio
async def test_served_postal_codes_match_without_coordinates(engine, store):
    await add_provider(store, 1, latitude=None, longitude=None, postal_code="73301", served_postal_codes=["78702"])

    ranked = await engine.rank(make_request())

    assert ranked[0].provider_id == 1
    assert ranked[0].matched_by == "served_area"


@pytest.mark.asyncio
async def test_falls_back_to_postal_code_and_city_when_geocoding_fails(engine, store):
    await add_provider(store, 1, postal_code="55555")
    await add_provider(store, 2, postal_code="66666", city="Springfield")
    await add_provider(store, 3, postal_code="77777", city="Shelbyville")

    ranked = await engine.rank(make_request(postal_code="55555", city=" springfield "))

    matched = {item.provider_id: item.matched_by for item in ranked}
    assert matched == {1: "postal_code", 2: "city"}


@pytest.mark.asyncio
async def test_no_eligible_providers(engine, store):
    await add_provider(store, 1, category_ids=[2])
    with pytest.raises(NoEligibleProvidersError) as exc_info:
        await engine.rank(make_request())
    assert exc_info.value.code == "no_eligible_providers"
    assert exc_info.value.details["service_request_id"] == 500


@pytest.mark.asyncio
async def test_request_without_category_is_rejected(engine):
    with pytest.raises(ValidationError):
        await engine.rank(make_request(category_id=None))


def test_ranking_is_deterministic():
    now = utcnow()
    providers = [make_provider(i, created_at=now - timedelta(days=i % 3)) for i in range(1, 8)]
    candidates = [Candidate(provider=p, terms=BASIC_TERMS, recent_leads=p.id % 2) for p in providers]
    pricing = LeadPricing(base_cost=Decimal("20.00"))
    request = make_request()

    first = rank_candidates(candidates, request, RankingWeights(), pricing, top_n=5)
    second = rank_candidates(list(reversed(candidates)), request, RankingWeights(), pricing, top_n=5)

    assert first == second
    assert [item.rank_position for item in first] == [1, 2, 3, 4, 5]
    scores = [item.score for item in first]
    assert scores == sorted(scores, reverse=True)


def test_top_three_of_five_with_tied_scores():
    now = utcnow()
    weights = RankingWeights(base_score=0)
    points = {1: 10, 2: 8, 3: 8, 4: 5, 5: 2}
    ages = {1: 100, 2: 30, 3: 300, 4: 400, 5: 500}
    candidates = [
        Candidate(
            provider=make_provider(pid, created_at=now - timedelta(days=ages[pid])),
            terms=PlanTerms(priority_boost_points=boost),
        )
        for pid, boost in points.items()
    ]

    ranked = rank_candidates(candidates, make_request(), weights, LeadPricing(base_cost=Decimal("20.00")), top_n=3)

    assert [(item.provider_id, item.score) for item in ranked] == [(1, 10), (3, 8), (2, 8)]
