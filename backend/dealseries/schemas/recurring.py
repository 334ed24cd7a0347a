"""Pydantic schemas for recurring deal series."""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal

from dealseries.models.recurring import Frequency, EndType, RecurringStatus
from dealseries.services.schedule import Cadence, check_cadence, check_end_condition


class DealRecurringBase(BaseModel):
    merchant_id: Optional[str] = None
    merchant_name: Optional[str] = None
    frequency: Frequency
    frequency_day: Optional[int] = Field(None, ge=0, le=31)
    frequency_week: Optional[int] = Field(None, ge=1, le=5)
    frequency_interval: Optional[int] = Field(None, ge=1)
    timezone: str = "UTC"
    end_type: EndType = EndType.never
    end_date: Optional[datetime] = None
    end_count: Optional[int] = Field(None, ge=1)
    due_date_offset: Optional[int] = Field(None, ge=0)
    amount: Optional[Decimal] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    template: Optional[Dict[str, Any]] = None


class DealRecurringCreate(DealRecurringBase):
    merchant_id: str
    issue_date: Optional[datetime] = None
    # Turn an existing deal into the first deal of the series
    deal_id: Optional[str] = None

    @model_validator(mode="after")
    def check_schedule(self):
        check_cadence(Cadence(
            frequency=self.frequency,
            frequency_day=self.frequency_day,
            frequency_week=self.frequency_week,
            frequency_interval=self.frequency_interval,
            timezone=self.timezone,
        ))
        check_end_condition(self.end_type, self.end_date, self.end_count)
        return self


class DealRecurringUpdate(BaseModel):
    """Partial update; only fields that are sent are applied."""
    merchant_id: Optional[str] = None
    merchant_name: Optional[str] = None
    frequency: Optional[Frequency] = None
    frequency_day: Optional[int] = Field(None, ge=0, le=31)
    frequency_week: Optional[int] = Field(None, ge=1, le=5)
    frequency_interval: Optional[int] = Field(None, ge=1)
    timezone: Optional[str] = None
    end_type: Optional[EndType] = None
    end_date: Optional[datetime] = None
    end_count: Optional[int] = Field(None, ge=1)
    due_date_offset: Optional[int] = Field(None, ge=0)
    amount: Optional[Decimal] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    template: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def check_required_not_cleared(self):
        cleared = [
            name for name in ("frequency", "timezone", "end_type", "merchant_id", "due_date_offset")
            if name in self.model_fields_set and getattr(self, name) is None
        ]
        if cleared:
            raise ValueError(f"Fields cannot be cleared: {', '.join(cleared)}")
        return self


class DealRecurringResponse(DealRecurringBase):
    id: str
    team_id: str
    user_id: str
    status: RecurringStatus
    deals_generated: int
    consecutive_failures: int
    next_scheduled_at: Optional[datetime] = None
    last_generated_at: Optional[datetime] = None
    upcoming_notification_sent_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PageMeta(BaseModel):
    cursor: Optional[str] = None
    has_previous_page: bool
    has_next_page: bool


class DealRecurringList(BaseModel):
    meta: PageMeta
    data: List[DealRecurringResponse]


class UpcomingDealItem(BaseModel):
    date: datetime
    amount: Decimal


class UpcomingSummaryResponse(BaseModel):
    has_end_date: bool
    total_count: Optional[int] = None
    total_amount: Optional[Decimal] = None
    currency: str


class UpcomingDealsResponse(BaseModel):
    deals: List[UpcomingDealItem]
    summary: UpcomingSummaryResponse


class DealRecurringInfo(BaseModel):
    """Series details shown next to a generated deal."""
    recurring_id: str
    sequence: Optional[int] = None
    total_count: Optional[int] = None
    frequency: Frequency
    frequency_day: Optional[int] = None
    frequency_week: Optional[int] = None
    next_scheduled_at: Optional[datetime] = None
    status: RecurringStatus


class GeneratedDealResponse(BaseModel):
    deal_id: str
    deal_number: str
    recurring_id: str
    sequence: int
    intervals_skipped: int = 0


class SchedulerRunResponse(BaseModel):
    processed: int
    skipped: int
    failed: int
    results: List[GeneratedDealResponse]
    errors: List[Dict[str, str]]
    has_more: bool


class NotificationRunResponse(BaseModel):
    notified: int
    failed: int
    recurring_ids: List[str]
    has_more: bool
