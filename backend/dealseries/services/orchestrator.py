"""
Scheduler runs: deal generation for due series and advance notices for
series about to come due.

Each run handles one bounded batch. A failing series is recorded and the run
moves on; nothing raised by a single series stops the batch.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealseries.config import settings
from dealseries.database import utcnow
from dealseries.errors import RecurringDealError, RecurringNotFoundError
from dealseries.models.deal import DealStatus
from dealseries.models.recurring import DealRecurring
from dealseries.services import recurring_store
from dealseries.services.generator import (
    GENERATE_DEAL,
    RECURRING_GENERATED,
    RECURRING_SERIES_COMPLETED,
    RECURRING_SERIES_PAUSED,
    RECURRING_UPCOMING,
    Dispatcher,
    DraftDealGenerator,
    InstanceGenerator,
    LoggingDispatcher,
)
from dealseries.services.schedule import as_utc

logger = logging.getLogger(__name__)

GENERATED = "generated"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class GeneratedDealResult:
    deal_id: str
    deal_number: str
    recurring_id: str
    sequence: int
    intervals_skipped: int = 0


@dataclass
class SeriesOutcome:
    status: str
    recurring_id: str
    result: Optional[GeneratedDealResult] = None
    error: Optional[str] = None
    auto_paused: bool = False


@dataclass
class ProcessResult:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    results: List[GeneratedDealResult] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    has_more: bool = False


@dataclass
class NotificationResult:
    notified: int = 0
    failed: int = 0
    recurring_ids: List[str] = field(default_factory=list)
    has_more: bool = False


def _safe_dispatch(dispatcher: Dispatcher, event: str, payload: Dict[str, Any]) -> None:
    # The deal already exists at this point; a delivery problem is not a generation failure
    try:
        dispatcher.dispatch(event, payload)
    except Exception as e:
        logger.error(f"Failed to dispatch {event} for recurring series {payload.get('recurring_id')}: {e}")


def _notification_payload(recurring: DealRecurring, deal_id: str, deal_number: str, sequence: int) -> Dict[str, Any]:
    return {
        "deal_id": deal_id,
        "deal_number": deal_number,
        "team_id": recurring.team_id,
        "merchant_name": recurring.merchant_name,
        "recurring_id": recurring.id,
        "recurring_sequence": sequence,
        "recurring_total_count": recurring.end_count,
    }


def _record_failure(
    db: Session,
    recurring_id: str,
    team_id: str,
    error: Exception,
    dispatcher: Dispatcher,
    now: datetime
) -> SeriesOutcome:
    code = error.code if isinstance(error, RecurringDealError) else "UNKNOWN"
    logger.error(f"Failed to generate recurring deal for series {recurring_id} ({code}): {error}")

    message = error.get_user_message() if isinstance(error, RecurringDealError) else str(error)

    try:
        failure = recurring_store.record_generation_failure(db, recurring_id, team_id, now=now)
    except RecurringNotFoundError:
        logger.warning(f"Recurring series {recurring_id} disappeared while generating")
        return SeriesOutcome(FAILED, recurring_id, error=message)

    if failure.auto_paused:
        logger.warning(
            f"Auto-paused recurring series {recurring_id} after "
            f"{failure.recurring.consecutive_failures} consecutive failures ({code})"
        )
        _safe_dispatch(dispatcher, RECURRING_SERIES_PAUSED, {
            "team_id": team_id,
            "recurring_id": recurring_id,
            "merchant_name": failure.recurring.merchant_name,
            "consecutive_failures": failure.recurring.consecutive_failures,
            "error_code": code,
        })

    return SeriesOutcome(FAILED, recurring_id, error=message, auto_paused=failure.auto_paused)


def process_recurring(
    db: Session,
    recurring_id: str,
    team_id: str,
    expected_next_scheduled_at: datetime,
    generator: InstanceGenerator,
    dispatcher: Dispatcher,
    now: Optional[datetime] = None
) -> SeriesOutcome:
    """
    Generate the deal for one due series.

    The series is claimed first, conditional on it still being scheduled for
    ``expected_next_scheduled_at``. Repeating the call with the same stale
    snapshot loses the claim and does nothing, which is what keeps a retried
    or concurrent run from generating the same cycle twice.
    """
    now = as_utc(now or utcnow())

    token = recurring_store.claim_recurring(db, recurring_id, expected_next_scheduled_at, now=now)
    if token is None:
        logger.info(f"Recurring series {recurring_id} already claimed or advanced, skipping")
        return SeriesOutcome(SKIPPED, recurring_id)

    try:
        recurring = recurring_store.get_recurring(db, recurring_id, team_id)
        sequence = recurring.deals_generated + 1

        existing = recurring_store.check_deal_exists(db, recurring_id, sequence)
        if existing:
            # The deal for this cycle was created but never counted; count it without re-creating
            record = recurring_store.record_generation_success(db, recurring_id, team_id, now=now)
            if existing.status not in (DealStatus.draft, DealStatus.scheduled):
                logger.info(f"Deal {existing.id} for series {recurring_id} sequence {sequence} already sent, skipping")
                return SeriesOutcome(SKIPPED, recurring_id)

            logger.info(f"Found existing {existing.status.value} deal {existing.id} for series {recurring_id} sequence {sequence}, sending it")
            deal_id, deal_number = existing.id, existing.deal_number
        else:
            deal = generator.generate(db, recurring, sequence, now)
            deal_id, deal_number = deal.id, deal.deal_number
            record = recurring_store.record_generation_success(db, recurring_id, team_id, now=now, commit=False)
            db.commit()
            db.refresh(record.recurring)

    except IntegrityError:
        # Another writer inserted this sequence first
        db.rollback()
        recurring_store.release_claim(db, recurring_id, token)
        logger.info(f"Deal for series {recurring_id} was generated concurrently, skipping")
        return SeriesOutcome(SKIPPED, recurring_id)

    except Exception as e:
        db.rollback()
        return _record_failure(db, recurring_id, team_id, e, dispatcher, now)

    result = GeneratedDealResult(
        deal_id=deal_id,
        deal_number=deal_number,
        recurring_id=recurring_id,
        sequence=sequence,
        intervals_skipped=record.intervals_skipped,
    )
    logger.info(f"Generated recurring deal {deal_number} ({deal_id}) for series {recurring_id}, sequence {sequence}")

    payload = _notification_payload(record.recurring, deal_id, deal_number, sequence)
    _safe_dispatch(dispatcher, GENERATE_DEAL, {"deal_id": deal_id, "delivery_type": "create_and_send", "recurring_id": recurring_id})
    _safe_dispatch(dispatcher, RECURRING_GENERATED, payload)

    if record.completed:
        logger.info(f"Recurring series {recurring_id} completed after {record.recurring.deals_generated} deal(s)")
        _safe_dispatch(dispatcher, RECURRING_SERIES_COMPLETED, payload)

    return SeriesOutcome(GENERATED, recurring_id, result=result)


def process_due_recurring(
    db: Session,
    generator: Optional[InstanceGenerator] = None,
    dispatcher: Optional[Dispatcher] = None,
    now: Optional[datetime] = None,
    limit: Optional[int] = None
) -> ProcessResult:
    """Run one scan: generate deals for a batch of due series."""
    if not settings.recurring_enabled:
        logger.warning("Recurring deal scheduler disabled via RECURRING_ENABLED")
        return ProcessResult()

    generator = generator or DraftDealGenerator()
    dispatcher = dispatcher or LoggingDispatcher()
    now = as_utc(now or utcnow())

    batch = recurring_store.get_due_recurring(db, limit=limit, now=now)

    if settings.recurring_dry_run:
        logger.info(
            f"[DRY RUN] Would process {len(batch.data)} recurring deal series"
            f"{' (more pending)' if batch.has_more else ''}"
        )
        for recurring in batch.data:
            logger.info(
                f"[DRY RUN] Series {recurring.id} team {recurring.team_id} "
                f"sequence {recurring.deals_generated + 1} due {recurring.next_scheduled_at.isoformat()}"
            )
        return ProcessResult(has_more=batch.has_more)

    if not batch.data:
        logger.info("No recurring deals due for generation")
        return ProcessResult()

    logger.info(f"Found {len(batch.data)} recurring deals to process{' (more pending)' if batch.has_more else ''}")

    # Commits below expire the loaded rows, so keep what the loop needs up front
    due = [(r.id, r.team_id, r.next_scheduled_at) for r in batch.data]
    result = ProcessResult(has_more=batch.has_more)

    for recurring_id, team_id, scheduled_at in due:
        outcome = process_recurring(db, recurring_id, team_id, scheduled_at, generator, dispatcher, now=now)

        if outcome.status == GENERATED:
            result.processed += 1
            result.results.append(outcome.result)
        elif outcome.status == SKIPPED:
            result.skipped += 1
        else:
            result.failed += 1
            result.errors.append({"recurring_id": recurring_id, "error": outcome.error})

    logger.info(
        f"Recurring deal scheduler completed: processed={result.processed} "
        f"skipped={result.skipped} failed={result.failed} total={len(due)} has_more={result.has_more}"
    )
    if result.has_more:
        logger.info("More recurring deals pending - will be processed in next scheduler run")

    return result


def process_upcoming_notifications(
    db: Session,
    dispatcher: Optional[Dispatcher] = None,
    now: Optional[datetime] = None,
    hours_ahead: Optional[int] = None,
    limit: Optional[int] = None
) -> NotificationResult:
    """Send one advance notice per series per cycle for series about to come due."""
    dispatcher = dispatcher or LoggingDispatcher()
    now = as_utc(now or utcnow())
    if hours_ahead is None:
        hours_ahead = settings.upcoming_notification_hours

    batch = recurring_store.get_upcoming_due_recurring(db, hours_ahead=hours_ahead, limit=limit, now=now)
    result = NotificationResult(has_more=batch.has_more)

    if not batch.data:
        logger.info("No upcoming recurring deals to notify")
        return result

    targets = [
        (r.id, r.team_id, {
            "team_id": r.team_id,
            "recurring_id": r.id,
            "merchant_name": r.merchant_name,
            "frequency": r.frequency.value,
            "next_scheduled_at": r.next_scheduled_at.isoformat(),
            "amount": str(r.amount) if r.amount is not None else None,
            "currency": r.currency,
        })
        for r in batch.data
    ]

    for recurring_id, team_id, payload in targets:
        try:
            dispatcher.dispatch(RECURRING_UPCOMING, payload)
        except Exception as e:
            # Not stamped, so the next run retries it
            logger.error(f"Failed to send upcoming notice for recurring series {recurring_id}: {e}")
            result.failed += 1
            continue

        recurring_store.mark_upcoming_notification_sent(db, recurring_id, team_id, now=now)
        result.notified += 1
        result.recurring_ids.append(recurring_id)

    logger.info(f"Upcoming recurring notices sent: {result.notified}, failed: {result.failed}")
    return result
