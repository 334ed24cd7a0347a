"""
Recurring deal series database model.
"""

import uuid
import enum
from sqlalchemy import Column, String, Integer, Numeric, Enum, JSON, ForeignKey, Index
from sqlalchemy.orm import relationship
from dealseries.database import Base, UTCDateTime, utcnow


class Frequency(str, enum.Enum):
    """Recurring frequency enumeration."""
    daily = "daily"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly_date = "monthly_date"
    monthly_weekday = "monthly_weekday"
    monthly_last_day = "monthly_last_day"
    quarterly = "quarterly"
    semi_annual = "semi_annual"
    annual = "annual"
    custom = "custom"


class EndType(str, enum.Enum):
    """How a recurring series ends."""
    never = "never"
    on_date = "on_date"
    after_count = "after_count"


class RecurringStatus(str, enum.Enum):
    """Recurring series lifecycle status."""
    active = "active"
    paused = "paused"
    completed = "completed"
    canceled = "canceled"


class DealRecurring(Base):
    """A recurring deal definition that produces one deal per cycle."""

    __tablename__ = "deal_recurring"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    team_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)

    # Counterparty; name survives the merchant being unlinked
    merchant_id = Column(String(36), ForeignKey("merchants.id", ondelete="SET NULL"), nullable=True)
    merchant_name = Column(String(255), nullable=True)

    # Cadence
    frequency = Column(Enum(Frequency), nullable=False)
    frequency_day = Column(Integer, nullable=True)  # 0-6 weekday or 1-31 day of month
    frequency_week = Column(Integer, nullable=True)  # 1-5 for monthly_weekday
    frequency_interval = Column(Integer, nullable=True)
    timezone = Column(String(64), nullable=False, default="UTC")

    # End condition
    end_type = Column(Enum(EndType), nullable=False, default=EndType.never)
    end_date = Column(UTCDateTime, nullable=True)
    end_count = Column(Integer, nullable=True)

    # Progress
    status = Column(Enum(RecurringStatus), nullable=False, default=RecurringStatus.active, index=True)
    deals_generated = Column(Integer, nullable=False, default=0)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    next_scheduled_at = Column(UTCDateTime, nullable=True)
    last_generated_at = Column(UTCDateTime, nullable=True)
    upcoming_notification_sent_at = Column(UTCDateTime, nullable=True)

    # Lease taken by a scheduler before generating
    claimed_until = Column(UTCDateTime, nullable=True)
    claim_token = Column(String(36), nullable=True)

    # Payload copied into each generated deal
    due_date_offset = Column(Integer, nullable=False, default=30)
    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    template = Column(JSON, nullable=True)  # Opaque: line items, payment details, blocks

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    merchant = relationship("Merchant", back_populates="recurring_series")
    deals = relationship("Deal", back_populates="recurring")

    __table_args__ = (
        Index("idx_deal_recurring_due", "status", "next_scheduled_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (RecurringStatus.completed, RecurringStatus.canceled)
