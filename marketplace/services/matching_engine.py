from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from marketplace.core.exceptions import NoEligibleProvidersError, ValidationError
from marketplace.core.logging import get_structlog_logger
from marketplace.services.geocoding import (
    Geocoder,
    bounding_box,
    clean_postal_code,
    haversine_miles,
)
from marketplace.services.records import (
    Coordinates,
    PlanTerms,
    ProviderRecord,
    ProviderStanding,
    ServiceRequestRecord,
    utcnow,
)
from marketplace.services.store import Store
from marketplace.services.subscriptions import LeadPricing, SubscriptionRegistry

logger = get_structlog_logger(__name__)


@dataclass(frozen=True)
class RankingWeights:
    base_score: float = 10.0
    subcategory_bonus: float = 5.0
    rating_weight: float = 1.0
    featured_bonus: float = 10.0
    recent_lead_penalty: float = 2.0


@dataclass(frozen=True)
class Candidate:
    provider: ProviderRecord
    terms: PlanTerms
    recent_leads: int = 0
    matched_by: str = "distance"
    distance_miles: Optional[float] = None


@dataclass(frozen=True)
class RankedProvider:
    provider_id: int
    rank_position: int
    score: float
    lead_cost: Decimal
    terms: PlanTerms
    matched_by: str
    distance_miles: Optional[float] = None


def coverage(
    provider: ProviderRecord,
    request: ServiceRequestRecord,
    request_point: Optional[Coordinates],
    default_radius_miles: float,
) -> Optional[Tuple[str, Optional[float]]]:
    """How ``provider`` covers the request location, or ``None`` when it does not."""
    request_code = clean_postal_code(request.postal_code)
    served = {clean_postal_code(code) for code in provider.served_postal_codes}
    if request_code and request_code in served:
        return "served_area", None

    provider_point = provider.coordinates
    if request_point is not None and provider_point is not None:
        radius = provider.service_radius_miles or default_radius_miles
        if not bounding_box(provider_point, radius).contains(request_point):
            return None
        distance = haversine_miles(provider_point, request_point)
        return ("distance", round(distance, 2)) if distance <= radius else None

    if request_code and request_code == clean_postal_code(provider.postal_code):
        return "postal_code", None
    if request.city and provider.city and request.city.strip().casefold() == provider.city.strip().casefold():
        return "city", None
    return None


def score_candidate(candidate: Candidate, request: ServiceRequestRecord, weights: RankingWeights) -> float:
    score = weights.base_score
    if request.subcategory_id is not None and request.subcategory_id in candidate.provider.subcategory_ids:
        score += weights.subcategory_bonus
    score += weights.rating_weight * candidate.provider.rating_average
    score += candidate.terms.priority_boost_points
    if candidate.terms.is_featured:
        score += weights.featured_bonus
    score -= weights.recent_lead_penalty * candidate.recent_leads
    return round(score, 6)


def rank_candidates(
    candidates: Sequence[Candidate],
    request: ServiceRequestRecord,
    weights: RankingWeights,
    pricing: LeadPricing,
    top_n: int,
) -> List[RankedProvider]:
    """Score, order and cut the candidate list. Pure; identical input gives identical output."""
    scored = []
    seen = set()
    for candidate in candidates:
        if candidate.provider.id in seen:
            continue
        seen.add(candidate.provider.id)
        scored.append((score_candidate(candidate, request, weights), candidate))

    # Older accounts win ties, then the lower id
    scored.sort(key=lambda item: (-item[0], item[1].provider.created_at, item[1].provider.id))

    ranked = []
    for position, (score, candidate) in enumerate(scored[:top_n], start=1):
        ranked.append(
            RankedProvider(
                provider_id=candidate.provider.id,
                rank_position=position,
                score=score,
                lead_cost=pricing.lead_cost(request.category_id, candidate.terms),
                terms=candidate.terms,
                matched_by=candidate.matched_by,
                distance_miles=candidate.distance_miles,
            )
        )
    return ranked


class MatchingEngine:
    def __init__(
        self,
        store: Store,
        geocoder: Geocoder,
        registry: SubscriptionRegistry,
        pricing: LeadPricing,
        weights: Optional[RankingWeights] = None,
        top_n: int = 3,
        recent_window: timedelta = timedelta(days=7),
        default_radius_miles: float = 25.0,
    ):
        self.store = store
        self.geocoder = geocoder
        self.registry = registry
        self.pricing = pricing
        self.weights = weights or RankingWeights()
        self.top_n = top_n
        self.recent_window = recent_window
        self.default_radius_miles = default_radius_miles

    async def rank(
        self,
        request: ServiceRequestRecord,
        exclude_provider_ids: Iterable[int] = (),
    ) -> List[RankedProvider]:
        if request.category_id is None:
            raise ValidationError(
                "Service request has no resolved category",
                code="category_required",
                details={"service_request_id": request.id},
            )

        # Network lookup happens before any transaction is opened
        request_point = await self.geocoder.resolve(request.postal_code)
        if request_point is None:
            logger.warning(
                "matching.geocoding_unavailable",
                service_request_id=request.id,
                postal_code=request.postal_code,
            )

        excluded = set(exclude_provider_ids)
        now = utcnow()
        async with self.store.transaction() as tx:
            providers = [
                provider
                for provider in await tx.list_providers_for_category(request.category_id)
                if provider.standing == ProviderStanding.ACTIVE and provider.id not in excluded
            ]
            provider_ids = [provider.id for provider in providers]
            snapshot = await self.registry.snapshot(tx, provider_ids, at=now)
            recent = await tx.count_recent_leads(provider_ids, since=now - self.recent_window)

        candidates = []
        for provider in providers:
            covered = coverage(provider, request, request_point, self.default_radius_miles)
            if covered is None:
                continue
            matched_by, distance = covered
            candidates.append(
                Candidate(
                    provider=provider,
                    terms=snapshot.terms_for(provider.id),
                    recent_leads=recent.get(provider.id, 0),
                    matched_by=matched_by,
                    distance_miles=distance,
                )
            )

        if not candidates:
            logger.info(
                "matching.no_eligible_providers",
                service_request_id=request.id,
                category_id=request.category_id,
                considered=len(providers),
                geocoded=request_point is not None,
            )
            raise NoEligibleProvidersError(request.id)

        ranked = rank_candidates(candidates, request, self.weights, self.pricing, self.top_n)
        logger.info(
            "matching.ranked",
            service_request_id=request.id,
            eligible=len(candidates),
            selected=[item.provider_id for item in ranked],
        )
        return ranked
