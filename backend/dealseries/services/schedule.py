"""
Schedule calculations for recurring deal series.

Everything here is pure: no database, no clock reads. Callers pass ``now``
explicitly. Arithmetic runs on the wall clock of the series timezone so a
"monthly on the 1st at 09:00 Europe/Berlin" series keeps its local time across
DST changes; every returned instant is an aware UTC datetime.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterator, NamedTuple, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta, MO, TU, WE, TH, FR, SA, SU

from dealseries.errors import RecurringValidationError
from dealseries.models.recurring import Frequency, EndType


# Indexed by frequency_day for weekday-based cadences (0 = Sunday)
WEEKDAYS = (SU, MO, TU, WE, TH, FR, SA)

MONTH_STEPS = {
    Frequency.monthly_date: 1,
    Frequency.monthly_weekday: 1,
    Frequency.monthly_last_day: 1,
    Frequency.quarterly: 3,
    Frequency.semi_annual: 6,
    Frequency.annual: 12,
}

DAY_OF_MONTH_FREQUENCIES = (
    Frequency.monthly_date,
    Frequency.quarterly,
    Frequency.semi_annual,
    Frequency.annual,
)

WEEKDAY_FREQUENCIES = (
    Frequency.weekly,
    Frequency.biweekly,
    Frequency.monthly_weekday,
)

MAX_ADVANCE_ITERATIONS = 1000
MAX_PREVIEW_ITEMS = 100
MAX_SUMMARY_ITEMS = 1000


@dataclass(frozen=True)
class Cadence:
    """Recurrence timing of a series."""

    frequency: Frequency
    frequency_day: Optional[int] = None
    frequency_week: Optional[int] = None
    frequency_interval: Optional[int] = None
    timezone: str = "UTC"

    @classmethod
    def from_recurring(cls, recurring) -> "Cadence":
        return cls(
            frequency=Frequency(recurring.frequency),
            frequency_day=recurring.frequency_day,
            frequency_week=recurring.frequency_week,
            frequency_interval=recurring.frequency_interval,
            timezone=recurring.timezone or "UTC",
        )


@dataclass(frozen=True)
class AdvanceResult:
    date: datetime
    intervals_skipped: int
    hit_safety_limit: bool


class UpcomingDeal(NamedTuple):
    date: datetime
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class UpcomingSummary:
    has_end_date: bool
    total_count: Optional[int]
    total_amount: Optional[Decimal]
    currency: str


def as_utc(value: datetime) -> datetime:
    """Tag naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day_utc(value: datetime) -> datetime:
    """Midnight UTC of the instant's UTC calendar day."""
    value = as_utc(value)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def get_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        raise RecurringValidationError(f"Unknown timezone: {name}")


def _clamp(value: int, low: int, high: int) -> int:
    return min(max(value, low), high)


def _sunday_weekday(value: datetime) -> int:
    """Weekday with Sunday as 0, matching frequency_day."""
    return (value.weekday() + 1) % 7


def _nth_weekday_of_month(local: datetime, day_of_week: int, week: int) -> datetime:
    """The nth given weekday of local's month; a missing 5th falls back to the last one."""
    weekday = WEEKDAYS[day_of_week]
    candidate = local + relativedelta(day=1, weekday=weekday(+week))
    if candidate.month != local.month:
        candidate = local + relativedelta(day=31, weekday=weekday(-1))
    return candidate


def next_due(cadence: Cadence, base: datetime) -> datetime:
    """
    Next occurrence strictly after ``base``.

    Pass the previous scheduled instant as ``base``, not the current time, so
    a series stays on its anchor (same weekday, same day of month) even when
    a run is late.
    """
    tz = get_zone(cadence.timezone)
    local = as_utc(base).astimezone(tz)
    interval = max(cadence.frequency_interval or 1, 1)
    frequency = Frequency(cadence.frequency)

    if frequency == Frequency.daily:
        next_local = local + timedelta(days=interval)

    elif frequency == Frequency.weekly:
        target = _clamp(cadence.frequency_day or 0, 0, 6)
        days_ahead = (target - _sunday_weekday(local)) % 7
        if days_ahead == 0:
            next_local = local + timedelta(weeks=interval)
        else:
            next_local = local + timedelta(days=days_ahead)

    elif frequency == Frequency.biweekly:
        next_local = local + timedelta(days=14)

    elif frequency == Frequency.monthly_weekday:
        target = _clamp(cadence.frequency_day or 0, 0, 6)
        week = _clamp(cadence.frequency_week or 1, 1, 5)
        shifted = local + relativedelta(months=interval)
        next_local = _nth_weekday_of_month(shifted, target, week)

    elif frequency == Frequency.monthly_last_day:
        # relativedelta clamps day=31 to the month's last day
        next_local = local + relativedelta(months=interval, day=31)

    elif frequency in DAY_OF_MONTH_FREQUENCIES:
        if frequency == Frequency.monthly_date:
            target = cadence.frequency_day or 1
        else:
            target = cadence.frequency_day or local.day
        months = MONTH_STEPS[frequency] * interval
        next_local = local + relativedelta(months=months, day=_clamp(target, 1, 31))

    elif frequency == Frequency.custom:
        next_local = local + timedelta(days=interval)

    else:
        raise ValueError(f"Unknown frequency: {frequency}")

    return next_local.astimezone(timezone.utc)


def first_due(cadence: Cadence, issue_at: Optional[datetime], now: datetime) -> datetime:
    """
    When the first deal of a new series should be generated.

    A future issue date (by calendar day in the series timezone) is honored;
    today or any past date means generate on the next scan.
    """
    if issue_is_future(cadence, issue_at, now):
        return as_utc(issue_at)
    return as_utc(now)


def issue_is_future(cadence: Cadence, issue_at: Optional[datetime], now: datetime) -> bool:
    """Whether the issue date falls on a later calendar day than today in the series timezone."""
    if issue_at is None:
        return False
    tz = get_zone(cadence.timezone)
    return as_utc(issue_at).astimezone(tz).date() > as_utc(now).astimezone(tz).date()


def advance_to_future(
    cadence: Cadence,
    candidate: datetime,
    now: datetime,
    max_iterations: int = MAX_ADVANCE_ITERATIONS,
) -> AdvanceResult:
    """
    Step ``candidate`` forward one cycle at a time until it is after ``now``.

    Missed cycles are skipped, not backfilled; the number skipped is reported.
    If the loop hits ``max_iterations`` the schedule restarts from ``now``.
    """
    now = as_utc(now)
    next_date = as_utc(candidate)
    skipped = 0

    while next_date <= now and skipped < max_iterations:
        next_date = next_due(cadence, next_date)
        skipped += 1

    hit_safety_limit = skipped >= max_iterations
    if hit_safety_limit:
        next_date = next_due(cadence, now)

    return AdvanceResult(
        date=next_date,
        intervals_skipped=0 if hit_safety_limit else skipped,
        hit_safety_limit=hit_safety_limit,
    )


def is_completed(
    end_type: EndType,
    end_date: Optional[datetime],
    end_count: Optional[int],
    deals_generated: int,
    candidate: Optional[datetime],
    now: Optional[datetime] = None,
) -> bool:
    """Whether a series with these end conditions has nothing left to generate."""
    end_type = EndType(end_type)

    if end_type == EndType.never:
        return False

    if end_type == EndType.on_date:
        if end_date is None:
            return False
        end_date = as_utc(end_date)
        if now is not None and as_utc(now) > end_date:
            return True
        return candidate is not None and as_utc(candidate) >= end_date

    if end_type == EndType.after_count:
        return end_count is not None and deals_generated >= end_count

    return False


class UpcomingPreview:
    """
    Upcoming deals of a series, computed lazily.

    Iterating twice replays the same dates; nothing is cached or mutated.
    """

    def __init__(
        self,
        cadence: Cadence,
        start: datetime,
        amount: Decimal,
        currency: str,
        end_type: EndType,
        end_date: Optional[datetime],
        end_count: Optional[int],
        already_generated: int = 0,
        limit: int = 10,
    ):
        self.cadence = cadence
        self.start = as_utc(start)
        self.amount = Decimal(amount)
        self.currency = currency
        self.end_type = EndType(end_type)
        self.end_date = as_utc(end_date) if end_date is not None else None
        self.end_count = end_count
        self.already_generated = already_generated
        self.limit = _clamp(limit, 0, MAX_PREVIEW_ITEMS)

    def _remaining(self) -> Optional[int]:
        if self.end_type == EndType.after_count and self.end_count is not None:
            return max(self.end_count - self.already_generated, 0)
        return None

    def __iter__(self) -> Iterator[UpcomingDeal]:
        remaining = self._remaining()
        current = self.start
        count = 0

        while count < self.limit:
            if self.end_type == EndType.on_date and self.end_date is not None and current >= self.end_date:
                return
            if remaining is not None and count >= remaining:
                return

            yield UpcomingDeal(current, self.amount, self.currency)
            count += 1
            current = next_due(self.cadence, current)

    def summary(self) -> UpcomingSummary:
        return preview_summary(
            self.cadence,
            self.start,
            self.amount,
            self.currency,
            self.end_type,
            self.end_date,
            self.end_count,
        )


def preview_upcoming(
    cadence: Cadence,
    start: datetime,
    amount: Decimal,
    currency: str,
    end_type: EndType,
    end_date: Optional[datetime],
    end_count: Optional[int],
    already_generated: int = 0,
    limit: int = 10,
) -> UpcomingPreview:
    return UpcomingPreview(
        cadence, start, amount, currency, end_type, end_date, end_count, already_generated, limit
    )


def preview_summary(
    cadence: Cadence,
    start: datetime,
    amount: Decimal,
    currency: str,
    end_type: EndType,
    end_date: Optional[datetime],
    end_count: Optional[int],
) -> UpcomingSummary:
    """Total deal count and amount over the whole series, when it ends."""
    end_type = EndType(end_type)
    amount = Decimal(amount)
    total_count = None
    total_amount = None

    if end_type == EndType.after_count and end_count is not None:
        total_count = end_count
        total_amount = amount * end_count
    elif end_type == EndType.on_date and end_date is not None:
        end_date = as_utc(end_date)
        current = as_utc(start)
        total_count = 0
        while current < end_date and total_count < MAX_SUMMARY_ITEMS:
            total_count += 1
            current = next_due(cadence, current)
        total_amount = amount * total_count

    return UpcomingSummary(
        has_end_date=end_type != EndType.never,
        total_count=total_count,
        total_amount=total_amount,
        currency=currency,
    )


def check_cadence(cadence: Cadence) -> None:
    """Raise RecurringValidationError if the cadence fields don't fit the frequency."""
    frequency = Frequency(cadence.frequency)
    get_zone(cadence.timezone)

    if frequency in WEEKDAY_FREQUENCIES and frequency != Frequency.biweekly:
        if cadence.frequency_day is None:
            raise RecurringValidationError(
                f"frequency_day is required for {frequency.value} frequency (0-6, Sunday-Saturday)"
            )
    if frequency in WEEKDAY_FREQUENCIES and cadence.frequency_day is not None:
        if not 0 <= cadence.frequency_day <= 6:
            raise RecurringValidationError(
                f"For {frequency.value} frequency, frequency_day must be 0-6 (Sunday-Saturday)"
            )

    if frequency in DAY_OF_MONTH_FREQUENCIES and cadence.frequency_day is not None:
        if not 1 <= cadence.frequency_day <= 31:
            raise RecurringValidationError(
                f"For {frequency.value} frequency, frequency_day must be 1-31 (day of month)"
            )
    if frequency == Frequency.monthly_date and cadence.frequency_day is None:
        raise RecurringValidationError("frequency_day is required for monthly_date frequency (1-31, day of month)")

    if frequency == Frequency.monthly_weekday:
        if cadence.frequency_week is None or not 1 <= cadence.frequency_week <= 5:
            raise RecurringValidationError(
                "frequency_week is required for monthly_weekday frequency (1-5, which occurrence)"
            )

    if frequency == Frequency.custom and cadence.frequency_interval is None:
        raise RecurringValidationError("frequency_interval is required when frequency is 'custom'")

    if cadence.frequency_interval is not None and cadence.frequency_interval < 1:
        raise RecurringValidationError("frequency_interval must be at least 1")


def check_end_condition(
    end_type: EndType,
    end_date: Optional[datetime],
    end_count: Optional[int],
) -> None:
    """Raise RecurringValidationError unless exactly the field end_type needs is set."""
    end_type = EndType(end_type)

    if end_type == EndType.on_date:
        if end_date is None:
            raise RecurringValidationError("end_date is required when end_type is 'on_date'")
        if end_count is not None:
            raise RecurringValidationError("end_count must be empty when end_type is 'on_date'")

    elif end_type == EndType.after_count:
        if end_count is None:
            raise RecurringValidationError("end_count is required when end_type is 'after_count'")
        if end_count < 1:
            raise RecurringValidationError("end_count must be at least 1")
        if end_date is not None:
            raise RecurringValidationError("end_date must be empty when end_type is 'after_count'")

    elif end_date is not None or end_count is not None:
        raise RecurringValidationError("end_date and end_count must be empty when end_type is 'never'")
