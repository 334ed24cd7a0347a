"""
Pydantic schemas package.
"""

from dealseries.schemas.recurring import (
    DealRecurringBase,
    DealRecurringCreate,
    DealRecurringUpdate,
    DealRecurringResponse,
    DealRecurringList,
    DealRecurringInfo,
    PageMeta,
    UpcomingDealItem,
    UpcomingSummaryResponse,
    UpcomingDealsResponse,
    GeneratedDealResponse,
    SchedulerRunResponse,
    NotificationRunResponse,
)

__all__ = [
    "DealRecurringBase",
    "DealRecurringCreate",
    "DealRecurringUpdate",
    "DealRecurringResponse",
    "DealRecurringList",
    "DealRecurringInfo",
    "PageMeta",
    "UpcomingDealItem",
    "UpcomingSummaryResponse",
    "UpcomingDealsResponse",
    "GeneratedDealResponse",
    "SchedulerRunResponse",
    "NotificationRunResponse",
]
