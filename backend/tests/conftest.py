"""Shared test fixtures."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient
from datetime import datetime, timezone
from decimal import Decimal
import uuid

from dealseries.database import Base
from dealseries.dependencies import get_db
from dealseries.main import app
from dealseries.models.merchant import Merchant
from dealseries.models.recurring import DealRecurring, Frequency, EndType, RecurringStatus
from dealseries.services.generator import Dispatcher, InstanceGenerator

TEAM_ID = "team-1"
USER_ID = "user-1"


def utc(*args):
    """Aware UTC datetime shorthand."""
    return datetime(*args, tzinfo=timezone.utc)


class RecordingDispatcher(Dispatcher):
    """Keeps every dispatched event for assertions."""

    def __init__(self):
        self.events = []

    def dispatch(self, event, payload):
        self.events.append((event, payload))

    def of(self, event):
        return [payload for name, payload in self.events if name == event]


class FailingDispatcher(Dispatcher):
    def dispatch(self, event, payload):
        raise RuntimeError("delivery backend down")


class FailingGenerator(InstanceGenerator):
    """Generator that always raises."""

    def __init__(self, error=None):
        self.error = error or RuntimeError("template service unavailable")
        self.calls = 0

    def generate(self, db, recurring, sequence, now):
        self.calls += 1
        raise self.error


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database for each test using in-memory SQLite."""
    # Use StaticPool to ensure all connections use the same in-memory database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    Base.metadata.create_all(bind=engine)

    # Create session
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def client(db_session):
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app, headers={"X-Team-Id": TEAM_ID, "X-User-Id": USER_ID}) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def sample_merchant(db_session):
    """Create a merchant with a billing address."""
    merchant = Merchant(
        id=str(uuid.uuid4()),
        team_id=TEAM_ID,
        name="Acme Corp",
        email="ap@acme.test",
        billing_email="billing@acme.test",
    )
    db_session.add(merchant)
    db_session.commit()
    db_session.refresh(merchant)
    return merchant


@pytest.fixture
def make_recurring(db_session, sample_merchant):
    """Factory for series rows; defaults to monthly on the 1st, due Jan 1 2024."""
    def _make(**overrides):
        values = dict(
            id=str(uuid.uuid4()),
            team_id=TEAM_ID,
            user_id=USER_ID,
            merchant_id=sample_merchant.id,
            merchant_name=sample_merchant.name,
            frequency=Frequency.monthly_date,
            frequency_day=1,
            timezone="UTC",
            end_type=EndType.never,
            status=RecurringStatus.active,
            deals_generated=0,
            consecutive_failures=0,
            next_scheduled_at=utc(2024, 1, 1, 9),
            due_date_offset=30,
            amount=Decimal("100.00"),
            currency="USD",
            template={"line_items": [{"name": "Retainer", "quantity": 1, "price": 100}]},
        )
        values.update(overrides)
        recurring = DealRecurring(**values)
        db_session.add(recurring)
        db_session.commit()
        db_session.refresh(recurring)
        return recurring

    return _make


@pytest.fixture
def sample_recurring(make_recurring):
    """An active monthly series due Jan 1 2024."""
    return make_recurring()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()
