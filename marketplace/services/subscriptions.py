from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional

from marketplace.core.logging import get_structlog_logger
from marketplace.services.records import BASIC_TERMS, PlanTerms, SubscriptionRecord, utcnow
from marketplace.services.store import StoreTransaction

logger = get_structlog_logger(__name__)

CENT = Decimal("0.01")


def subscription_in_force(record: SubscriptionRecord, at: datetime) -> bool:
    if not record.active:
        return False
    return record.current_period_end is None or record.current_period_end > at


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Read-only provider -> plan terms view taken at one instant."""

    taken_at: datetime
    terms: Mapping[int, PlanTerms]

    def terms_for(self, provider_id: int) -> PlanTerms:
        return self.terms.get(provider_id, BASIC_TERMS)


class SubscriptionRegistry:
    async def snapshot(
        self,
        tx: StoreTransaction,
        provider_ids: Iterable[int],
        at: Optional[datetime] = None,
    ) -> SubscriptionSnapshot:
        at = at or utcnow()
        provider_ids = list(provider_ids)
        terms: Dict[int, PlanTerms] = {pid: BASIC_TERMS for pid in provider_ids}
        expired = 0
        for record in await tx.list_subscriptions(provider_ids):
            if subscription_in_force(record, at):
                terms[record.provider_id] = record.terms
            else:
                expired += 1
        if expired:
            logger.debug("subscriptions.expired_defaulted", count=expired)
        return SubscriptionSnapshot(taken_at=at, terms=MappingProxyType(terms))


class LeadPricing:
    """Per-category lead cost with the plan discount applied."""

    def __init__(
        self,
        base_cost: Decimal,
        minimum_cost: Decimal = CENT,
        category_pricing: Optional[Mapping[int, Decimal]] = None,
    ):
        self.base_cost = Decimal(base_cost)
        self.minimum_cost = Decimal(minimum_cost)
        self.category_pricing = dict(category_pricing or {})

    def base_for(self, category_id: int) -> Decimal:
        return Decimal(self.category_pricing.get(category_id, self.base_cost))

    def lead_cost(self, category_id: int, terms: PlanTerms) -> Decimal:
        base = self.base_for(category_id)
        discount = min(max(Decimal(terms.lead_discount_percent), Decimal("0")), Decimal("100"))
        cost = (base * (Decimal("100") - discount) / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
        return max(cost, self.minimum_cost)
