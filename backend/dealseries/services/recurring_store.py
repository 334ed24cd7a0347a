"""Persistence and state transitions for recurring deal series."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from dealseries.config import settings
from dealseries.database import utcnow
from dealseries.errors import (
    DealNotFoundError,
    MerchantNotFoundError,
    RecurringNotFoundError,
    RecurringValidationError,
)
from dealseries.models.deal import Deal, DealStatus
from dealseries.models.merchant import Merchant
from dealseries.models.recurring import DealRecurring, EndType, Frequency, RecurringStatus
from dealseries.services.schedule import (
    Cadence,
    UpcomingPreview,
    advance_to_future,
    as_utc,
    check_cadence,
    check_end_condition,
    first_due,
    issue_is_future,
    is_completed,
    next_due,
    preview_upcoming,
)

logger = logging.getLogger(__name__)

CADENCE_FIELDS = ("frequency", "frequency_day", "frequency_week", "frequency_interval", "timezone")
END_FIELDS = ("end_type", "end_date", "end_count")
UPDATABLE_FIELDS = CADENCE_FIELDS + END_FIELDS + (
    "merchant_id",
    "merchant_name",
    "due_date_offset",
    "amount",
    "currency",
    "template",
)
# Columns a series cannot run without
REQUIRED_FIELDS = ("frequency", "timezone", "end_type", "merchant_id", "due_date_offset")


@dataclass
class Batch:
    """A bounded page of series plus whether more rows matched."""
    data: List[DealRecurring]
    has_more: bool


@dataclass
class SuccessRecord:
    recurring: DealRecurring
    completed: bool
    intervals_skipped: int


@dataclass
class FailureRecord:
    recurring: DealRecurring
    auto_paused: bool


@dataclass
class RecurringPage:
    data: List[DealRecurring]
    cursor: Optional[str]
    has_previous_page: bool
    has_next_page: bool


@dataclass
class CreateRecurringParams:
    team_id: str
    user_id: str
    frequency: Frequency
    frequency_day: Optional[int] = None
    frequency_week: Optional[int] = None
    frequency_interval: Optional[int] = None
    timezone: str = "UTC"
    end_type: EndType = EndType.never
    end_date: Optional[datetime] = None
    end_count: Optional[int] = None
    merchant_id: Optional[str] = None
    merchant_name: Optional[str] = None
    due_date_offset: Optional[int] = None
    amount: Optional[Any] = None
    currency: Optional[str] = None
    template: Optional[Dict[str, Any]] = field(default=None)
    # First deal goes out on this date if it is in the future, otherwise on the next scan
    issue_date: Optional[datetime] = None
    # Existing draft deal that becomes sequence 1; its issue date replaces issue_date
    deal_id: Optional[str] = None


def _get_or_raise(db: Session, recurring_id: str, team_id: str) -> DealRecurring:
    recurring = db.query(DealRecurring).filter(
        DealRecurring.id == recurring_id,
        DealRecurring.team_id == team_id
    ).first()
    if not recurring:
        raise RecurringNotFoundError(recurring_id, team_id)
    return recurring


def _get_billable_merchant(db: Session, merchant_id: Optional[str], team_id: str) -> Merchant:
    """The team's merchant, which must have an address for deals to be sent to."""
    if not merchant_id:
        raise RecurringValidationError("merchant_id is required for a recurring series")

    merchant = db.query(Merchant).filter(
        Merchant.id == merchant_id,
        Merchant.team_id == team_id
    ).first()
    if not merchant:
        raise MerchantNotFoundError(merchant_id, team_id)

    if not (merchant.billing_email or merchant.email):
        raise RecurringValidationError(
            "Merchant must have an email address to receive recurring deals. "
            "Please add an email to the merchant profile."
        )
    return merchant


def _revert_scheduled_deals(db: Session, recurring: DealRecurring) -> int:
    """Put deals queued for sending back to draft so nothing goes out for a stopped series."""
    return db.query(Deal).filter(
        Deal.deal_recurring_id == recurring.id,
        Deal.team_id == recurring.team_id,
        Deal.status == DealStatus.scheduled
    ).update({Deal.status: DealStatus.draft}, synchronize_session=False)


def _commit(db: Session, recurring: DealRecurring, commit: bool) -> DealRecurring:
    if commit:
        db.commit()
        db.refresh(recurring)
    else:
        db.flush()
    return recurring


def create_recurring(
    db: Session,
    params: CreateRecurringParams,
    now: Optional[datetime] = None
) -> DealRecurring:
    """
    Create an active series with its first deal scheduled.

    With ``deal_id`` the existing deal becomes sequence 1. A deal dated today
    or earlier counts as already generated and the schedule continues from
    its issue date; a future-dated deal is sent by the scheduler on that day.
    Repeating the call for a deal that is already linked returns its series.
    """
    now = as_utc(now or utcnow())

    deal = None
    if params.deal_id:
        deal = db.query(Deal).filter(
            Deal.id == params.deal_id,
            Deal.team_id == params.team_id
        ).first()
        if deal and deal.deal_recurring_id:
            existing = db.query(DealRecurring).filter(
                DealRecurring.id == deal.deal_recurring_id,
                DealRecurring.team_id == params.team_id
            ).first()
            if existing:
                logger.info(f"Deal {deal.id} already belongs to recurring series {existing.id}")
                return existing

    cadence = Cadence(
        frequency=Frequency(params.frequency),
        frequency_day=params.frequency_day,
        frequency_week=params.frequency_week,
        frequency_interval=params.frequency_interval,
        timezone=params.timezone,
    )
    check_cadence(cadence)
    check_end_condition(params.end_type, params.end_date, params.end_count)
    merchant = _get_billable_merchant(db, params.merchant_id, params.team_id)

    if params.deal_id and not deal:
        raise DealNotFoundError(params.deal_id, params.team_id)

    issue_date = deal.issue_date if deal else params.issue_date

    recurring = DealRecurring(
        id=str(uuid.uuid4()),
        team_id=params.team_id,
        user_id=params.user_id,
        merchant_id=merchant.id,
        merchant_name=params.merchant_name or merchant.name,
        frequency=cadence.frequency,
        frequency_day=params.frequency_day,
        frequency_week=params.frequency_week,
        frequency_interval=params.frequency_interval,
        timezone=params.timezone,
        end_type=EndType(params.end_type),
        end_date=params.end_date,
        end_count=params.end_count,
        due_date_offset=(
            params.due_date_offset
            if params.due_date_offset is not None
            else settings.recurring_default_due_date_offset
        ),
        amount=params.amount,
        currency=params.currency,
        template=params.template,
        status=RecurringStatus.active,
        deals_generated=0,
        consecutive_failures=0,
        next_scheduled_at=first_due(cadence, issue_date, now),
    )
    db.add(recurring)

    if deal:
        db.flush()
        deal.deal_recurring_id = recurring.id
        deal.recurring_sequence = 1
        if not issue_is_future(cadence, issue_date, now):
            recurring.deals_generated = 1
            recurring.last_generated_at = now
            recurring.next_scheduled_at = next_due(cadence, issue_date or now)

    db.commit()
    db.refresh(recurring)

    logger.info(f"Created recurring series {recurring.id} for team {recurring.team_id}, first run {recurring.next_scheduled_at.isoformat()}")
    return recurring


def update_recurring(
    db: Session,
    recurring_id: str,
    team_id: str,
    changes: Dict[str, Any],
    now: Optional[datetime] = None
) -> DealRecurring:
    """
    Apply a partial update.

    End conditions are validated on the merged record. A cadence change on an
    active series reschedules from ``now`` because the old anchor no longer
    applies.
    """
    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise RecurringValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    cleared = [name for name in REQUIRED_FIELDS if name in changes and changes[name] is None]
    if cleared:
        raise RecurringValidationError(f"Fields cannot be cleared: {', '.join(cleared)}")

    recurring = _get_or_raise(db, recurring_id, team_id)
    now = as_utc(now or utcnow())

    if "merchant_id" in changes:
        merchant = _get_billable_merchant(db, changes["merchant_id"], team_id)
        if "merchant_name" not in changes:
            changes = {**changes, "merchant_name": merchant.name}

    cadence_changed = any(name in changes for name in CADENCE_FIELDS)
    end_changed = any(name in changes for name in END_FIELDS)

    if cadence_changed:
        cadence = Cadence(
            frequency=Frequency(changes.get("frequency", recurring.frequency)),
            frequency_day=changes.get("frequency_day", recurring.frequency_day),
            frequency_week=changes.get("frequency_week", recurring.frequency_week),
            frequency_interval=changes.get("frequency_interval", recurring.frequency_interval),
            timezone=changes.get("timezone", recurring.timezone),
        )
        check_cadence(cadence)
        if "frequency" in changes:
            changes = {**changes, "frequency": cadence.frequency}
    else:
        cadence = Cadence.from_recurring(recurring)

    if end_changed:
        end_type = EndType(changes.get("end_type", recurring.end_type))
        end_date = changes.get("end_date", recurring.end_date)
        end_count = changes.get("end_count", recurring.end_count)
        # Switching end type drops the field the old type used, unless it was sent explicitly
        if end_type != EndType.on_date and "end_date" not in changes:
            end_date = None
        if end_type != EndType.after_count and "end_count" not in changes:
            end_count = None
        check_end_condition(end_type, end_date, end_count)
        changes = {**changes, "end_type": end_type, "end_date": end_date, "end_count": end_count}

    for name, value in changes.items():
        setattr(recurring, name, value)

    if recurring.status == RecurringStatus.active:
        if cadence_changed:
            recurring.next_scheduled_at = next_due(cadence, now)
            logger.info(f"Cadence of recurring series {recurring.id} changed, rescheduled to {recurring.next_scheduled_at.isoformat()}")

        if end_changed and is_completed(
            recurring.end_type,
            recurring.end_date,
            recurring.end_count,
            recurring.deals_generated,
            recurring.next_scheduled_at,
            now,
        ):
            recurring.status = RecurringStatus.completed
            recurring.next_scheduled_at = None
            logger.info(f"Recurring series {recurring.id} completed by end condition update")

    recurring.updated_at = now
    return _commit(db, recurring, True)


def get_recurring(db: Session, recurring_id: str, team_id: str) -> DealRecurring:
    return _get_or_raise(db, recurring_id, team_id)


def list_recurring(
    db: Session,
    team_id: str,
    status: Optional[List[RecurringStatus]] = None,
    merchant_id: Optional[str] = None,
    cursor: Optional[str] = None,
    page_size: int = 25
) -> RecurringPage:
    """List a team's series, newest first, with an offset cursor."""
    query = db.query(DealRecurring).filter(DealRecurring.team_id == team_id)

    if status:
        query = query.filter(DealRecurring.status.in_(status))
    if merchant_id:
        query = query.filter(DealRecurring.merchant_id == merchant_id)

    offset = int(cursor) if cursor else 0
    data = query.order_by(
        DealRecurring.created_at.desc(),
        DealRecurring.id
    ).offset(offset).limit(page_size).all()

    has_next_page = len(data) == page_size
    return RecurringPage(
        data=data,
        cursor=str(offset + page_size) if has_next_page else None,
        has_previous_page=offset > 0,
        has_next_page=has_next_page,
    )


def pause_recurring(db: Session, recurring_id: str, team_id: str) -> DealRecurring:
    """Pause an active series. The schedule is left as is; resume recomputes it."""
    recurring = _get_or_raise(db, recurring_id, team_id)

    if recurring.status == RecurringStatus.paused:
        return recurring
    if recurring.status != RecurringStatus.active:
        raise RecurringValidationError(f"Cannot pause a {recurring.status.value} series")

    recurring.status = RecurringStatus.paused
    recurring.updated_at = utcnow()
    reverted = _revert_scheduled_deals(db, recurring)
    logger.info(f"Paused recurring series {recurring.id}, {reverted} scheduled deal(s) back to draft")
    return _commit(db, recurring, True)


def resume_recurring(
    db: Session,
    recurring_id: str,
    team_id: str,
    now: Optional[datetime] = None
) -> DealRecurring:
    """
    Resume a paused series from ``now``.

    End conditions are re-checked first: an end date that passed while the
    series was paused completes it instead.
    """
    recurring = _get_or_raise(db, recurring_id, team_id)

    if recurring.status == RecurringStatus.active:
        return recurring
    if recurring.status != RecurringStatus.paused:
        raise RecurringValidationError(f"Cannot resume a {recurring.status.value} series")

    now = as_utc(now or utcnow())
    next_scheduled_at = next_due(Cadence.from_recurring(recurring), now)

    if is_completed(
        recurring.end_type,
        recurring.end_date,
        recurring.end_count,
        recurring.deals_generated,
        next_scheduled_at,
        now,
    ):
        recurring.status = RecurringStatus.completed
        recurring.next_scheduled_at = None
        logger.info(f"Recurring series {recurring.id} completed on resume, end condition already met")
    else:
        recurring.status = RecurringStatus.active
        recurring.consecutive_failures = 0
        recurring.next_scheduled_at = next_scheduled_at
        logger.info(f"Resumed recurring series {recurring.id}, next run {next_scheduled_at.isoformat()}")

    recurring.updated_at = now
    return _commit(db, recurring, True)


def cancel_recurring(db: Session, recurring_id: str, team_id: str) -> DealRecurring:
    """Cancel a series. Deals it already generated are kept; scheduled ones go back to draft."""
    recurring = _get_or_raise(db, recurring_id, team_id)

    if recurring.status == RecurringStatus.canceled:
        return recurring

    recurring.status = RecurringStatus.canceled
    recurring.next_scheduled_at = None
    recurring.updated_at = utcnow()
    reverted = _revert_scheduled_deals(db, recurring)
    logger.info(f"Canceled recurring series {recurring.id}, {reverted} scheduled deal(s) back to draft")
    return _commit(db, recurring, True)


def get_due_recurring(
    db: Session,
    limit: Optional[int] = None,
    now: Optional[datetime] = None
) -> Batch:
    """
    Active series whose next run has arrived, oldest first.

    Over-fetches one row to report whether more are pending.
    """
    now = as_utc(now or utcnow())
    if limit is None:
        limit = settings.recurring_batch_size

    data = db.query(DealRecurring).filter(
        DealRecurring.status == RecurringStatus.active,
        DealRecurring.next_scheduled_at.isnot(None),
        DealRecurring.next_scheduled_at <= now
    ).order_by(
        DealRecurring.next_scheduled_at,
        DealRecurring.id
    ).limit(limit + 1).all()

    has_more = len(data) > limit
    return Batch(data=data[:limit], has_more=has_more)


def claim_recurring(
    db: Session,
    recurring_id: str,
    expected_next_scheduled_at: datetime,
    now: Optional[datetime] = None,
    lease_seconds: Optional[int] = None
) -> Optional[str]:
    """
    Atomically take the generation lease on a due series.

    The UPDATE only matches while the series is active, still scheduled for
    ``expected_next_scheduled_at`` and not leased by someone else, so two
    schedulers reading the same due row cannot both generate it. Returns the
    claim token, or None if the claim was lost.
    """
    now = as_utc(now or utcnow())
    if lease_seconds is None:
        lease_seconds = settings.recurring_claim_lease_seconds
    token = str(uuid.uuid4())

    claimed = db.query(DealRecurring).filter(
        DealRecurring.id == recurring_id,
        DealRecurring.status == RecurringStatus.active,
        DealRecurring.next_scheduled_at == expected_next_scheduled_at,
        or_(
            DealRecurring.claimed_until.is_(None),
            DealRecurring.claimed_until <= now
        )
    ).update(
        {
            DealRecurring.claimed_until: now + timedelta(seconds=lease_seconds),
            DealRecurring.claim_token: token,
        },
        synchronize_session=False
    )
    db.commit()

    return token if claimed == 1 else None


def release_claim(db: Session, recurring_id: str, token: str) -> None:
    db.query(DealRecurring).filter(
        DealRecurring.id == recurring_id,
        DealRecurring.claim_token == token
    ).update(
        {DealRecurring.claimed_until: None, DealRecurring.claim_token: None},
        synchronize_session=False
    )
    db.commit()


def record_generation_success(
    db: Session,
    recurring_id: str,
    team_id: str,
    now: Optional[datetime] = None,
    commit: bool = True
) -> SuccessRecord:
    """
    Count a generated deal and move the schedule to the next cycle.

    The next run is computed from the previous scheduled instant, then
    fast-forwarded past ``now`` so a late run never queues back-dated cycles.
    A series canceled or paused while generating keeps its status.
    """
    recurring = _get_or_raise(db, recurring_id, team_id)
    now = as_utc(now or utcnow())

    recurring.deals_generated += 1
    recurring.consecutive_failures = 0
    recurring.last_generated_at = now
    recurring.claimed_until = None
    recurring.claim_token = None
    recurring.updated_at = now

    if recurring.status != RecurringStatus.active:
        return SuccessRecord(_commit(db, recurring, commit), completed=False, intervals_skipped=0)

    cadence = Cadence.from_recurring(recurring)
    base = recurring.next_scheduled_at or now
    advance = advance_to_future(cadence, next_due(cadence, base), now)

    if advance.hit_safety_limit:
        logger.warning(f"Recurring series {recurring.id} fell too far behind, rescheduled from now")
    elif advance.intervals_skipped:
        logger.warning(f"Recurring series {recurring.id} skipped {advance.intervals_skipped} missed cycle(s)")

    completed = is_completed(
        recurring.end_type,
        recurring.end_date,
        recurring.end_count,
        recurring.deals_generated,
        advance.date,
        now,
    )
    if completed:
        recurring.status = RecurringStatus.completed
        recurring.next_scheduled_at = None
    else:
        recurring.next_scheduled_at = advance.date

    return SuccessRecord(
        _commit(db, recurring, commit),
        completed=completed,
        intervals_skipped=advance.intervals_skipped,
    )


def record_generation_failure(
    db: Session,
    recurring_id: str,
    team_id: str,
    now: Optional[datetime] = None,
    max_failures: Optional[int] = None
) -> FailureRecord:
    """
    Count a failed generation. The schedule is not moved, so the next scan
    retries the same cycle; reaching the threshold pauses the series.
    """
    recurring = _get_or_raise(db, recurring_id, team_id)
    if max_failures is None:
        max_failures = settings.recurring_max_consecutive_failures

    recurring.consecutive_failures += 1
    recurring.claimed_until = None
    recurring.claim_token = None
    recurring.updated_at = as_utc(now or utcnow())

    auto_paused = (
        recurring.status == RecurringStatus.active
        and recurring.consecutive_failures >= max_failures
    )
    if auto_paused:
        recurring.status = RecurringStatus.paused

    return FailureRecord(_commit(db, recurring, True), auto_paused=auto_paused)


def check_deal_exists(db: Session, recurring_id: str, sequence: int) -> Optional[Deal]:
    """The deal generated for this series and sequence number, if any."""
    return db.query(Deal).filter(
        Deal.deal_recurring_id == recurring_id,
        Deal.recurring_sequence == sequence
    ).first()


def get_upcoming_deals(
    db: Session,
    recurring_id: str,
    team_id: str,
    limit: int = 10,
    now: Optional[datetime] = None
) -> UpcomingPreview:
    """Preview the next deals of a series. Finished series preview nothing."""
    recurring = _get_or_raise(db, recurring_id, team_id)
    start = recurring.next_scheduled_at or as_utc(now or utcnow())

    return preview_upcoming(
        Cadence.from_recurring(recurring),
        start,
        recurring.amount or 0,
        recurring.currency or settings.default_currency,
        recurring.end_type,
        recurring.end_date,
        recurring.end_count,
        already_generated=recurring.deals_generated,
        limit=0 if recurring.is_terminal else limit,
    )


def get_recurring_info_for_deal(db: Session, deal_id: str, team_id: str) -> Optional[Dict[str, Any]]:
    """Series details for a generated deal, for display next to the deal."""
    deal = db.query(Deal).filter(
        Deal.id == deal_id,
        Deal.team_id == team_id
    ).first()
    if not deal or not deal.deal_recurring_id:
        return None

    recurring = db.query(DealRecurring).filter(
        DealRecurring.id == deal.deal_recurring_id,
        DealRecurring.team_id == team_id
    ).first()
    if not recurring:
        return None

    return {
        "recurring_id": recurring.id,
        "sequence": deal.recurring_sequence,
        "total_count": recurring.end_count if recurring.end_type == EndType.after_count else None,
        "frequency": recurring.frequency,
        "frequency_day": recurring.frequency_day,
        "frequency_week": recurring.frequency_week,
        "next_scheduled_at": recurring.next_scheduled_at,
        "status": recurring.status,
    }


def get_upcoming_due_recurring(
    db: Session,
    hours_ahead: Optional[int] = None,
    limit: Optional[int] = None,
    now: Optional[datetime] = None
) -> Batch:
    """
    Active series due within ``hours_ahead`` that still need an advance notice
    for their current cycle.

    A notice stamped earlier than ``next_scheduled_at - hours_ahead`` belongs
    to a previous cycle. Every stale stamp is therefore older than ``now``,
    which the query uses as a bound parameter; the exact per-row check runs
    here over the bounded window.
    """
    now = as_utc(now or utcnow())
    if hours_ahead is None:
        hours_ahead = settings.upcoming_notification_hours
    if limit is None:
        limit = settings.upcoming_notification_batch_size
    window = timedelta(hours=hours_ahead)

    query = db.query(DealRecurring).filter(
        DealRecurring.status == RecurringStatus.active,
        DealRecurring.next_scheduled_at > now,
        DealRecurring.next_scheduled_at <= now + window,
        or_(
            DealRecurring.upcoming_notification_sent_at.is_(None),
            DealRecurring.upcoming_notification_sent_at < now
        )
    ).order_by(
        DealRecurring.next_scheduled_at,
        DealRecurring.id
    )

    # Read in chunks until one row past the limit is found or the window is exhausted
    chunk_size = limit + 1
    data = []
    offset = 0
    while len(data) <= limit:
        chunk = query.offset(offset).limit(chunk_size).all()
        data.extend(
            r for r in chunk
            if r.upcoming_notification_sent_at is None
            or r.upcoming_notification_sent_at < r.next_scheduled_at - window
        )
        if len(chunk) < chunk_size:
            break
        offset += chunk_size

    return Batch(data=data[:limit], has_more=len(data) > limit)


def mark_upcoming_notification_sent(
    db: Session,
    recurring_id: str,
    team_id: str,
    now: Optional[datetime] = None
) -> DealRecurring:
    recurring = _get_or_raise(db, recurring_id, team_id)
    now = as_utc(now or utcnow())

    recurring.upcoming_notification_sent_at = now
    recurring.updated_at = now
    return _commit(db, recurring, True)
