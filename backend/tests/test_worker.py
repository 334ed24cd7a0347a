"""Tests for the periodic job entry points."""

from dealseries import worker
from dealseries.models.deal import Deal


class TestWorker:
    """Test job selection and exit codes."""

    def test_generate(self, db_session, sample_recurring, monkeypatch):
        monkeypatch.setattr(worker, "SessionLocal", lambda: db_session)
        assert worker.main(["generate"]) == 0
        assert db_session.query(Deal).count() == 1

    def test_generate_all_failed(self, db_session, make_recurring, monkeypatch):
        """Exit non-zero when nothing could be generated."""
        make_recurring(merchant_id=None)
        monkeypatch.setattr(worker, "SessionLocal", lambda: db_session)
        assert worker.main(["generate"]) == 1

    def test_notify(self, db_session, monkeypatch):
        monkeypatch.setattr(worker, "SessionLocal", lambda: db_session)
        assert worker.main(["notify", "--hours-ahead", "12"]) == 0
