# marketplace/models/lead.py
from __future__ import annotations

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)

from marketplace.db.base import Base, enum_column_type
from marketplace.services.records import DeclineReason, PlanTier
from marketplace.services.state_machine import LeadStatus

LEAD_STATUS = enum_column_type(LeadStatus, "lead_status")


class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    service_request_id = Column(ForeignKey("service_requests.id", ondelete="CASCADE"), nullable=False)
    provider_id = Column(ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False, index=True)
    category_id = Column(Integer, nullable=False)

    rank_position = Column(Integer, nullable=False)
    score = Column(Float, nullable=False)
    lead_cost = Column(Numeric(10, 2), nullable=False)

    # Plan terms in force when the lead was created
    plan_tier = Column(enum_column_type(PlanTier, "lead_plan_tier"), nullable=False)
    plan_discount_percent = Column(Numeric(5, 2), nullable=False, server_default="0")
    plan_fee_rate = Column(Numeric(5, 4))

    status = Column(
        LEAD_STATUS,
        nullable=False,
        server_default=LeadStatus.CREATED.value,
    )
    decline_reason = Column(enum_column_type(DeclineReason, "decline_reason"))
    decline_note = Column(String(500))
    cancel_reason = Column(String(200))

    lead_charge_ref = Column(String(200))
    lead_charge_attempts = Column(Integer, nullable=False, server_default="0")
    lead_charge_error = Column(Text)
    lead_charged_at = Column(DateTime(timezone=True))

    agreed_price = Column(Numeric(12, 2))
    payment_intent_ref = Column(String(200))
    captured_at = Column(DateTime(timezone=True))

    notified_at = Column(DateTime(timezone=True))
    viewed_at = Column(DateTime(timezone=True))
    responded_at = Column(DateTime(timezone=True))
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    approved_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("service_request_id", "provider_id", name="uq_leads_request_provider"),
        Index("idx_leads_request_rank", "service_request_id", "rank_position"),
        Index("idx_leads_provider_created", "provider_id", "created_at"),
        CheckConstraint("lead_cost >= 0", name="check_non_negative_cost"),
        CheckConstraint("agreed_price IS NULL OR agreed_price > 0", name="check_positive_agreed_price"),
    )


class LeadEvent(Base):
    """Append-only status history for a lead."""

    __tablename__ = "lead_events"

    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    lead_id = Column(ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(LEAD_STATUS)
    to_status = Column(LEAD_STATUS, nullable=False)
    reason = Column(Text)
