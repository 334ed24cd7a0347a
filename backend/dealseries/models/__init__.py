"""
Database models package.
"""

from dealseries.models.merchant import Merchant
from dealseries.models.recurring import DealRecurring, Frequency, EndType, RecurringStatus
from dealseries.models.deal import Deal, DealStatus

__all__ = [
    "Merchant",
    "DealRecurring",
    "Frequency",
    "EndType",
    "RecurringStatus",
    "Deal",
    "DealStatus",
]
