# marketplace/models/notification.py
from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from marketplace.db.base import Base, enum_column_type
from marketplace.services.state_machine import NotificationStatus


class NotificationAudit(Base):
    __tablename__ = "notification_audits"

    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    recipient = Column(String(200), nullable=False)
    user_id = Column(Integer, index=True)
    lead_id = Column(ForeignKey("leads.id", ondelete="SET NULL"), index=True)
    service_request_id = Column(ForeignKey("service_requests.id", ondelete="SET NULL"), index=True)

    message_type = Column(String(64), nullable=False)
    channel = Column(String(32), nullable=False)
    subject = Column(String(300), nullable=False)
    payload = Column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))

    status = Column(
        enum_column_type(NotificationStatus, "notification_status"),
        nullable=False,
        server_default=NotificationStatus.PENDING.value,
    )
    retry_count = Column(Integer, nullable=False, server_default="0")
    max_retries = Column(Integer, nullable=False, server_default="3")
    last_error = Column(Text)
    next_attempt_at = Column(DateTime(timezone=True))
    sent_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index(
            "idx_notification_audits_due",
            "next_attempt_at",
            postgresql_where=text("status IN ('pending', 'retrying')"),
        ),
        Index("idx_notification_audits_status", "status"),
    )


class DeliveryAttempt(Base):
    """One row per send attempt; never updated."""

    __tablename__ = "delivery_attempts"

    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    notification_id = Column(
        ForeignKey("notification_audits.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt_number = Column(Integer, nullable=False)
    success = Column(Boolean, nullable=False)
    channel = Column(String(32), nullable=False)
    error = Column(Text)
    external_id = Column(String(200))


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    id = Column(Integer, primary_key=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user_id = Column(Integer, nullable=False, unique=True)
    email_enabled = Column(Boolean, nullable=False, server_default="true")
    sms_enabled = Column(Boolean, nullable=False, server_default="true")
    disabled_types = Column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
    unsubscribe_token = Column(String(100), unique=True)
