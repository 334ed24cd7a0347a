"""
Merchant database model.
"""

import uuid
from sqlalchemy import Column, String
from sqlalchemy.orm import relationship
from dealseries.database import Base, UTCDateTime, utcnow


class Merchant(Base):
    """Merchant model. The counterparty deals are billed to."""

    __tablename__ = "merchants"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    team_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    billing_email = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    # Relationships
    recurring_series = relationship("DealRecurring", back_populates="merchant")
    deals = relationship("Deal", back_populates="merchant")
