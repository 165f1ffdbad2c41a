# marketplace/models/service_request.py
from __future__ import annotations

from sqlalchemy import (
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

from marketplace.db.base import Base, enum_column_type
from marketplace.services.state_machine import ServiceRequestStatus


class ServiceRequest(Base):
    __tablename__ = "service_requests"

    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    customer_id = Column(Integer, nullable=False, index=True)
    customer_email = Column(String(200), nullable=False)
    customer_phone = Column(String(20))

    category_id = Column(Integer, nullable=False)
    subcategory_id = Column(Integer)
    postal_code = Column(String(16), nullable=False)
    city = Column(String(128))
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, server_default="")

    status = Column(
        enum_column_type(ServiceRequestStatus, "service_request_status"),
        nullable=False,
        server_default=ServiceRequestStatus.REQUEST_CREATED.value,
    )
    # Set once by the accepting lead; NULL while the request is still open
    accepted_lead_id = Column(ForeignKey("leads.id", ondelete="SET NULL", use_alter=True), nullable=True)

    __table_args__ = (
        Index("idx_service_requests_status_created", "status", "created_at"),
        Index(
            "idx_service_requests_unaccepted",
            "created_at",
            postgresql_where=text("accepted_lead_id IS NULL"),
        ),
    )
