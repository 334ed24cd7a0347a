"""
Collaborators the scheduler hands work to: the instance generator that turns
a due series into a deal, and the dispatcher that sends follow-up work
(delivery, notifications) onward.
"""

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from dealseries.errors import RecurringDealError
from dealseries.models.deal import Deal, DealStatus
from dealseries.models.merchant import Merchant
from dealseries.models.recurring import DealRecurring
from dealseries.services.schedule import start_of_day_utc

logger = logging.getLogger(__name__)

# Dispatched event names
GENERATE_DEAL = "generate_deal"
RECURRING_GENERATED = "recurring_generated"
RECURRING_SERIES_COMPLETED = "recurring_series_completed"
RECURRING_SERIES_PAUSED = "recurring_series_paused"
RECURRING_UPCOMING = "recurring_upcoming"


class InstanceGenerator(ABC):
    """Materializes the deal for one cycle of a series."""

    @abstractmethod
    def generate(self, db: Session, recurring: DealRecurring, sequence: int, now: datetime) -> Deal:
        """
        Add the deal for ``sequence`` to the session and flush it.

        Must not commit: the orchestrator commits the deal together with the
        series bookkeeping. Raise RecurringDealError for problems the user
        has to fix.
        """


class Dispatcher(ABC):
    """Sends work triggered by the scheduler onward."""

    @abstractmethod
    def dispatch(self, event: str, payload: Dict[str, Any]) -> None:
        pass


class LoggingDispatcher(Dispatcher):
    """Dispatcher that only logs; used when no delivery backend is wired in."""

    def dispatch(self, event: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Dispatch {event}: {payload}")


def validate_template(recurring: DealRecurring) -> List[str]:
    """Problems with a series payload that would make the generated deal unusable."""
    errors = []
    template = recurring.template

    if template is not None and not isinstance(template, dict):
        errors.append("template must be an object")
        template = None

    line_items = (template or {}).get("line_items")
    if line_items is not None:
        if not isinstance(line_items, list):
            errors.append("line_items must be a list")
        elif not all(isinstance(item, dict) for item in line_items):
            errors.append("every line item must be an object")

    if recurring.amount is not None:
        try:
            if Decimal(str(recurring.amount)) < 0:
                errors.append("amount cannot be negative")
        except InvalidOperation:
            errors.append("amount is not a number")

    if recurring.currency is not None and len(recurring.currency) != 3:
        errors.append("currency must be a 3-letter code")

    return errors


def next_deal_number(db: Session, team_id: str) -> str:
    count = db.query(Deal).filter(Deal.team_id == team_id).count()
    return f"DEAL-{count + 1:04d}"


class DraftDealGenerator(InstanceGenerator):
    """
    Creates a draft deal from the series payload.

    The deal stays a draft until delivery succeeds downstream; the issue date
    is the UTC day of the scheduled run, not the day the scan happened.
    """

    def generate(self, db: Session, recurring: DealRecurring, sequence: int, now: datetime) -> Deal:
        errors = validate_template(recurring)
        if errors:
            raise RecurringDealError.template_invalid(recurring.id, ", ".join(errors), recurring.team_id)

        # merchant_id is nulled when the merchant is deleted; merchant_name survives
        if not recurring.merchant_id:
            raise RecurringDealError.merchant_deleted(recurring.id, recurring.merchant_name, recurring.team_id)

        merchant = db.query(Merchant).filter(
            Merchant.id == recurring.merchant_id,
            Merchant.team_id == recurring.team_id
        ).first()
        if not merchant:
            raise RecurringDealError.merchant_not_found(recurring.id, recurring.merchant_id, recurring.team_id)

        merchant_email = merchant.billing_email or merchant.email
        if not merchant_email:
            raise RecurringDealError.merchant_no_email(
                recurring.id, recurring.merchant_name or merchant.name, recurring.team_id
            )

        issue_date = start_of_day_utc(recurring.next_scheduled_at or now)

        deal = Deal(
            id=str(uuid.uuid4()),
            team_id=recurring.team_id,
            user_id=recurring.user_id,
            deal_number=next_deal_number(db, recurring.team_id),
            status=DealStatus.draft,
            merchant_id=merchant.id,
            merchant_name=recurring.merchant_name or merchant.name,
            sent_to=merchant_email,
            issue_date=issue_date,
            due_date=issue_date + timedelta(days=recurring.due_date_offset or 0),
            amount=recurring.amount,
            currency=recurring.currency,
            template=copy.deepcopy(recurring.template),
            deal_recurring_id=recurring.id,
            recurring_sequence=sequence,
        )
        db.add(deal)
        db.flush()
        return deal
