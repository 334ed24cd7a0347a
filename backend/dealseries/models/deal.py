"""
Deal database model.
"""

import uuid
import enum
from sqlalchemy import Column, String, Integer, Numeric, Enum, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from dealseries.database import Base, UTCDateTime, utcnow


class DealStatus(str, enum.Enum):
    """Deal status enumeration."""
    draft = "draft"
    scheduled = "scheduled"
    unpaid = "unpaid"
    overdue = "overdue"
    paid = "paid"
    canceled = "canceled"


class Deal(Base):
    """A concrete deal, either entered by hand or generated from a recurring series."""

    __tablename__ = "deals"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    team_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=True)
    deal_number = Column(String(50), nullable=False)
    status = Column(Enum(DealStatus), nullable=False, default=DealStatus.draft)

    merchant_id = Column(String(36), ForeignKey("merchants.id", ondelete="SET NULL"), nullable=True)
    merchant_name = Column(String(255), nullable=True)
    sent_to = Column(String(255), nullable=True)

    issue_date = Column(UTCDateTime, nullable=True)
    due_date = Column(UTCDateTime, nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    template = Column(JSON, nullable=True)

    # Set only for deals generated from a series
    deal_recurring_id = Column(String(36), ForeignKey("deal_recurring.id"), nullable=True, index=True)
    recurring_sequence = Column(Integer, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    # Relationships
    recurring = relationship("DealRecurring", back_populates="deals")
    merchant = relationship("Merchant", back_populates="deals")

    # One deal per (series, sequence); the idempotency guard for generation
    __table_args__ = (
        UniqueConstraint("deal_recurring_id", "recurring_sequence", name="uq_deal_recurring_sequence"),
    )
