"""Tests for scheduler runs: generation and advance notices."""

import pytest
from datetime import timedelta

from dealseries.config import settings
from dealseries.errors import RecurringDealError
from dealseries.models.deal import Deal, DealStatus
from dealseries.models.recurring import EndType, Frequency, RecurringStatus
from dealseries.services import recurring_store
from dealseries.services.recurring_store import CreateRecurringParams
from dealseries.services.generator import (
    GENERATE_DEAL,
    RECURRING_GENERATED,
    RECURRING_SERIES_COMPLETED,
    RECURRING_SERIES_PAUSED,
    RECURRING_UPCOMING,
    DraftDealGenerator,
)
from dealseries.services.orchestrator import (
    GENERATED,
    SKIPPED,
    process_due_recurring,
    process_recurring,
    process_upcoming_notifications,
)

from conftest import TEAM_ID, USER_ID, FailingDispatcher, FailingGenerator, utc


def run(db_session, dispatcher, now, generator=None, limit=None):
    return process_due_recurring(
        db_session,
        generator=generator or DraftDealGenerator(),
        dispatcher=dispatcher,
        now=now,
        limit=limit,
    )


class CancelingGenerator(DraftDealGenerator):
    """Cancels the series while its deal is being generated."""

    def generate(self, db, recurring, sequence, now):
        deal = super().generate(db, recurring, sequence, now)
        recurring.status = RecurringStatus.canceled
        recurring.next_scheduled_at = None
        return deal


class TestGeneration:
    """Test generating deals for due series."""

    def test_generates_draft_deal(self, db_session, dispatcher, sample_recurring, sample_merchant):
        """A due series produces one draft deal and moves to the next cycle."""
        result = run(db_session, dispatcher, utc(2024, 1, 1, 10))

        assert result.processed == 1
        assert result.failed == 0
        deal = db_session.query(Deal).one()
        assert deal.status == DealStatus.draft
        assert deal.deal_number == "DEAL-0001"
        assert deal.recurring_sequence == 1
        assert deal.sent_to == sample_merchant.billing_email
        assert deal.issue_date == utc(2024, 1, 1)
        assert deal.due_date == utc(2024, 1, 31)
        assert deal.template == sample_recurring.template

        db_session.refresh(sample_recurring)
        assert sample_recurring.deals_generated == 1
        assert sample_recurring.next_scheduled_at == utc(2024, 2, 1, 9)

        assert dispatcher.of(GENERATE_DEAL)[0]["deal_id"] == deal.id
        assert dispatcher.of(RECURRING_GENERATED)[0]["recurring_sequence"] == 1

    def test_sequences_have_no_gaps(self, db_session, dispatcher, sample_recurring):
        """Each cycle gets the next sequence number."""
        for month in (1, 2, 3):
            run(db_session, dispatcher, utc(2024, month, 1, 10))

        sequences = [d.recurring_sequence for d in db_session.query(Deal).order_by(Deal.recurring_sequence)]
        assert sequences == [1, 2, 3]
        for sequence in (1, 2, 3):
            assert recurring_store.check_deal_exists(db_session, sample_recurring.id, sequence) is not None
        assert recurring_store.check_deal_exists(db_session, sample_recurring.id, 4) is None

    def test_same_snapshot_twice_generates_once(self, db_session, dispatcher, sample_recurring):
        """Retrying with the same pre-state does not create a second deal."""
        snapshot = sample_recurring.next_scheduled_at
        now = utc(2024, 1, 1, 10)
        generator = DraftDealGenerator()

        first = process_recurring(db_session, sample_recurring.id, TEAM_ID, snapshot, generator, dispatcher, now=now)
        second = process_recurring(db_session, sample_recurring.id, TEAM_ID, snapshot, generator, dispatcher, now=now)

        assert first.status == GENERATED
        assert second.status == SKIPPED
        assert db_session.query(Deal).count() == 1
        db_session.refresh(sample_recurring)
        assert sample_recurring.deals_generated == 1

    def test_existing_deal_is_not_recreated(self, db_session, dispatcher, sample_recurring):
        """A deal left behind by an interrupted run is counted, not duplicated."""
        existing = Deal(
            team_id=TEAM_ID,
            deal_number="DEAL-0001",
            status=DealStatus.draft,
            deal_recurring_id=sample_recurring.id,
            recurring_sequence=1,
        )
        db_session.add(existing)
        db_session.commit()

        result = run(db_session, dispatcher, utc(2024, 1, 1, 10))

        assert result.processed == 1
        assert result.results[0].deal_id == existing.id
        assert db_session.query(Deal).count() == 1
        db_session.refresh(sample_recurring)
        assert sample_recurring.deals_generated == 1
        assert sample_recurring.next_scheduled_at == utc(2024, 2, 1, 9)

    def test_future_deal_adopted_on_its_date(self, db_session, dispatcher, sample_merchant):
        """A series created from a future-dated deal sends that deal instead of a new one."""
        deal = Deal(
            team_id=TEAM_ID,
            deal_number="DEAL-0001",
            status=DealStatus.draft,
            merchant_id=sample_merchant.id,
            issue_date=utc(2024, 2, 1, 9),
        )
        db_session.add(deal)
        db_session.commit()
        recurring = recurring_store.create_recurring(
            db_session,
            CreateRecurringParams(
                team_id=TEAM_ID,
                user_id=USER_ID,
                frequency=Frequency.monthly_date,
                frequency_day=1,
                merchant_id=sample_merchant.id,
                deal_id=deal.id,
            ),
            now=utc(2024, 1, 10, 12)
        )

        result = run(db_session, dispatcher, utc(2024, 2, 1, 10))

        assert result.processed == 1
        assert result.results[0].deal_id == deal.id
        assert db_session.query(Deal).count() == 1
        db_session.refresh(recurring)
        assert recurring.deals_generated == 1
        assert recurring.next_scheduled_at == utc(2024, 3, 1, 9)

    def test_existing_sent_deal_is_skipped(self, db_session, dispatcher, sample_recurring):
        """A deal already past draft is not dispatched again."""
        db_session.add(Deal(
            team_id=TEAM_ID,
            deal_number="DEAL-0001",
            status=DealStatus.paid,
            deal_recurring_id=sample_recurring.id,
            recurring_sequence=1,
        ))
        db_session.commit()

        result = run(db_session, dispatcher, utc(2024, 1, 1, 10))

        assert result.skipped == 1
        assert dispatcher.events == []
        db_session.refresh(sample_recurring)
        assert sample_recurring.deals_generated == 1

    def test_missed_cycles_are_not_backfilled(self, db_session, dispatcher, sample_recurring):
        """Ten missed cycles still produce a single deal."""
        result = run(db_session, dispatcher, utc(2024, 11, 15))

        assert result.processed == 1
        assert result.results[0].intervals_skipped == 10
        assert db_session.query(Deal).count() == 1
        db_session.refresh(sample_recurring)
        assert sample_recurring.deals_generated == 1
        assert sample_recurring.next_scheduled_at == utc(2024, 12, 1, 9)

    def test_late_monthly_scan(self, db_session, dispatcher, sample_recurring):
        """Due Jan 1, first scanned Apr 15: one deal, next run May 1."""
        result = run(db_session, dispatcher, utc(2024, 4, 15))

        assert result.results[0].sequence == 1
        assert result.results[0].intervals_skipped == 3
        db_session.refresh(sample_recurring)
        assert sample_recurring.next_scheduled_at == utc(2024, 5, 1, 9)

    def test_completes_after_count(self, db_session, dispatcher, make_recurring):
        """A three-deal series completes on its third deal, not before."""
        recurring = make_recurring(end_type=EndType.after_count, end_count=3)

        for month in (1, 2):
            run(db_session, dispatcher, utc(2024, month, 1, 10))
            db_session.refresh(recurring)
            assert recurring.status == RecurringStatus.active

        run(db_session, dispatcher, utc(2024, 3, 1, 10))
        db_session.refresh(recurring)
        assert recurring.status == RecurringStatus.completed
        assert recurring.deals_generated == 3
        assert recurring.next_scheduled_at is None
        assert len(dispatcher.of(RECURRING_SERIES_COMPLETED)) == 1

        result = run(db_session, dispatcher, utc(2024, 4, 1, 10))
        assert result.processed == 0
        assert db_session.query(Deal).count() == 3

    def test_batch_limit(self, db_session, dispatcher, make_recurring):
        for day in (1, 2, 3):
            make_recurring(next_scheduled_at=utc(2024, 1, day, 9))

        result = run(db_session, dispatcher, utc(2024, 1, 5), limit=2)
        assert result.processed == 2
        assert result.has_more

    def test_cancel_during_generation(self, db_session, dispatcher, sample_recurring):
        """The deal is kept, and no further cycle is scheduled."""
        result = run(db_session, dispatcher, utc(2024, 1, 1, 10), generator=CancelingGenerator())

        assert result.processed == 1
        db_session.refresh(sample_recurring)
        assert sample_recurring.status == RecurringStatus.canceled
        assert sample_recurring.next_scheduled_at is None
        assert sample_recurring.deals_generated == 1

    def test_dispatch_failure_is_not_a_generation_failure(self, db_session, sample_recurring):
        result = run(db_session, FailingDispatcher(), utc(2024, 1, 1, 10))

        assert result.processed == 1
        db_session.refresh(sample_recurring)
        assert sample_recurring.consecutive_failures == 0


class TestFailures:
    """Test failure recording and auto-pause."""

    def test_failure_keeps_schedule(self, db_session, dispatcher, sample_recurring):
        result = run(db_session, dispatcher, utc(2024, 1, 1, 10), generator=FailingGenerator())

        assert result.failed == 1
        assert result.errors[0]["recurring_id"] == sample_recurring.id
        db_session.refresh(sample_recurring)
        assert sample_recurring.consecutive_failures == 1
        assert sample_recurring.status == RecurringStatus.active
        assert sample_recurring.next_scheduled_at == utc(2024, 1, 1, 9)
        assert db_session.query(Deal).count() == 0

    def test_auto_pause_after_three_failures(self, db_session, dispatcher, sample_recurring):
        generator = FailingGenerator()
        for _ in range(3):
            run(db_session, dispatcher, utc(2024, 1, 1, 10), generator=generator)

        db_session.refresh(sample_recurring)
        assert sample_recurring.status == RecurringStatus.paused
        assert sample_recurring.consecutive_failures == 3
        assert sample_recurring.next_scheduled_at == utc(2024, 1, 1, 9)
        assert len(dispatcher.of(RECURRING_SERIES_PAUSED)) == 1

        # Paused series are no longer due
        run(db_session, dispatcher, utc(2024, 1, 1, 11), generator=generator)
        assert generator.calls == 3

    def test_success_resets_failures(self, db_session, dispatcher, sample_recurring):
        now = utc(2024, 1, 1, 10)
        run(db_session, dispatcher, now, generator=FailingGenerator())
        run(db_session, dispatcher, now, generator=FailingGenerator())
        run(db_session, dispatcher, now)

        db_session.refresh(sample_recurring)
        assert sample_recurring.consecutive_failures == 0
        assert sample_recurring.status == RecurringStatus.active

    def test_deleted_merchant(self, db_session, dispatcher, make_recurring):
        make_recurring(merchant_id=None, merchant_name="Old Client")
        result = run(db_session, dispatcher, utc(2024, 1, 1, 10))

        assert result.failed == 1
        assert "Old Client" in result.errors[0]["error"]

    def test_merchant_without_email(self, db_session, dispatcher, sample_recurring, sample_merchant):
        sample_merchant.email = None
        sample_merchant.billing_email = None
        db_session.commit()

        result = run(db_session, dispatcher, utc(2024, 1, 1, 10))
        assert result.failed == 1

    def test_invalid_template(self, db_session, dispatcher, make_recurring):
        make_recurring(template={"line_items": "not a list"})
        result = run(db_session, dispatcher, utc(2024, 1, 1, 10))

        assert result.failed == 1
        assert "line_items" in result.errors[0]["error"]

    def test_typed_error_code_in_pause_event(self, db_session, dispatcher, make_recurring):
        make_recurring(merchant_id=None)
        for _ in range(3):
            run(db_session, dispatcher, utc(2024, 1, 1, 10))

        assert dispatcher.of(RECURRING_SERIES_PAUSED)[0]["error_code"] == RecurringDealError.MERCHANT_DELETED


class TestRunSwitches:
    """Test the kill switch and dry run."""

    def test_kill_switch(self, db_session, dispatcher, sample_recurring, monkeypatch):
        monkeypatch.setattr(settings, "recurring_enabled", False)
        result = run(db_session, dispatcher, utc(2024, 1, 1, 10))

        assert result.processed == 0
        assert db_session.query(Deal).count() == 0

    def test_dry_run_changes_nothing(self, db_session, dispatcher, make_recurring, monkeypatch):
        monkeypatch.setattr(settings, "recurring_dry_run", True)
        for day in (1, 2):
            make_recurring(next_scheduled_at=utc(2024, 1, day, 9))

        result = run(db_session, dispatcher, utc(2024, 1, 5), limit=1)

        assert result.processed == 0
        assert result.has_more
        assert db_session.query(Deal).count() == 0
        assert dispatcher.events == []


class TestUpcomingNotifications:
    """Test advance notices."""

    def test_single_fire_per_cycle(self, db_session, dispatcher, make_recurring):
        now = utc(2024, 1, 31, 21)
        recurring = make_recurring(next_scheduled_at=utc(2024, 2, 1, 9))

        first = process_upcoming_notifications(db_session, dispatcher=dispatcher, now=now, hours_ahead=24)
        assert first.notified == 1
        assert first.recurring_ids == [recurring.id]
        assert dispatcher.of(RECURRING_UPCOMING)[0]["recurring_id"] == recurring.id

        again = process_upcoming_notifications(db_session, dispatcher=dispatcher, now=now + timedelta(hours=1), hours_ahead=24)
        assert again.notified == 0

        # Next cycle gets its own notice
        recurring.next_scheduled_at = utc(2024, 3, 1, 9)
        db_session.commit()
        later = process_upcoming_notifications(db_session, dispatcher=dispatcher, now=utc(2024, 2, 29, 21), hours_ahead=24)
        assert later.notified == 1

    def test_dispatch_failure_not_stamped(self, db_session, make_recurring):
        now = utc(2024, 1, 31, 21)
        recurring = make_recurring(next_scheduled_at=utc(2024, 2, 1, 9))

        result = process_upcoming_notifications(db_session, dispatcher=FailingDispatcher(), now=now, hours_ahead=24)

        assert result.failed == 1
        db_session.refresh(recurring)
        assert recurring.upcoming_notification_sent_at is None
