# marketplace/models/payout.py
from __future__ import annotations

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)

from marketplace.db.base import Base, enum_column_type
from marketplace.services.state_machine import PayoutStatus


class Payout(Base):
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # One payout per lead, enforced here rather than in application code
    lead_id = Column(ForeignKey("leads.id", ondelete="RESTRICT"), nullable=False, unique=True)
    provider_id = Column(ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False, index=True)

    total_amount = Column(Numeric(12, 2), nullable=False)
    provider_payout_amount = Column(Numeric(12, 2), nullable=False)
    platform_fee_amount = Column(Numeric(12, 2), nullable=False)
    fee_rate = Column(Numeric(5, 4), nullable=False)

    status = Column(
        enum_column_type(PayoutStatus, "payout_status"),
        nullable=False,
        server_default=PayoutStatus.PENDING.value,
    )
    attempts = Column(Integer, nullable=False, server_default="0")
    max_attempts = Column(Integer, nullable=False, server_default="3")
    last_error = Column(Text)
    external_transfer_id = Column(String(200))

    captured_at = Column(DateTime(timezone=True))
    processing_at = Column(DateTime(timezone=True))
    transferred_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    next_retry_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_payouts_status_retry", "status", "next_retry_at"),
        CheckConstraint("total_amount > 0", name="check_positive_total"),
        CheckConstraint(
            "provider_payout_amount + platform_fee_amount = total_amount",
            name="check_split_sums_to_total",
        ),
        CheckConstraint("platform_fee_amount >= 0", name="check_non_negative_fee"),
    )
