# marketplace/models/provider.py
from __future__ import annotations

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from marketplace.db.base import Base, enum_column_type
from marketplace.services.records import PlanTier, ProviderStanding


class Provider(Base):
    __tablename__ = "providers"

    # Provider ids come from the account system
    id = Column(Integer, primary_key=True, autoincrement=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    name = Column(String(200), nullable=False)
    email = Column(String(200), nullable=False)
    phone = Column(String(20))

    category_ids = Column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
    subcategory_ids = Column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
    served_postal_codes = Column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))

    postal_code = Column(String(16), nullable=False)
    city = Column(String(128))
    latitude = Column(Float)
    longitude = Column(Float)
    service_radius_miles = Column(Float)

    rating_average = Column(Float, nullable=False, server_default="0")
    standing = Column(
        enum_column_type(ProviderStanding, "provider_standing"),
        nullable=False,
        server_default=ProviderStanding.ACTIVE.value,
    )
    payout_account_id = Column(String(200))
    # Card charged for accepted leads
    billing_customer_id = Column(String(200))
    billing_payment_method_id = Column(String(200))

    __table_args__ = (
        Index("idx_providers_category_ids", "category_ids", postgresql_using="gin"),
        Index("idx_providers_standing", "standing"),
        CheckConstraint("rating_average >= 0 AND rating_average <= 5", name="check_rating_range"),
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True)
    provider_id = Column(ForeignKey("providers.id", ondelete="CASCADE"), nullable=False, unique=True)

    tier = Column(enum_column_type(PlanTier, "plan_tier"), nullable=False, server_default=PlanTier.BASIC.value)
    lead_discount_percent = Column(Numeric(5, 2), nullable=False, server_default="0")
    priority_boost_points = Column(Integer, nullable=False, server_default="0")
    is_featured = Column(Boolean, nullable=False, server_default="false")
    has_advanced_analytics = Column(Boolean, nullable=False, server_default="false")
    platform_fee_rate = Column(Numeric(5, 4))

    active = Column(Boolean, nullable=False, server_default="true")
    current_period_end = Column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "lead_discount_percent >= 0 AND lead_discount_percent <= 100",
            name="check_discount_range",
        ),
        CheckConstraint(
            "platform_fee_rate IS NULL OR (platform_fee_rate >= 0 AND platform_fee_rate <= 1)",
            name="check_fee_rate_range",
        ),
    )
