"""Tests for recurring deal series API endpoints."""

import pytest
from decimal import Decimal

from dealseries.models.deal import Deal, DealStatus
from dealseries.models.merchant import Merchant
from dealseries.models.recurring import DealRecurring

from conftest import TEAM_ID, utc


def create_payload(**overrides):
    payload = {
        "frequency": "monthly_date",
        "frequency_day": 1,
        "merchant_name": "Acme Corp",
        "amount": "250.00",
        "currency": "USD",
        "issue_date": "2030-01-01T09:00:00Z",
        "template": {"line_items": [{"name": "Retainer", "quantity": 1, "price": 250}]},
    }
    payload.update(overrides)
    return payload


class TestDealRecurringAPI:
    """Test series CRUD endpoints."""

    def test_create(self, client, sample_merchant):
        """Should create an active series scheduled on the issue date."""
        response = client.post("/api/v1/deal-recurring", json=create_payload(merchant_id=sample_merchant.id))
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "active"
        assert data["team_id"] == TEAM_ID
        assert data["deals_generated"] == 0
        assert data["next_scheduled_at"].startswith("2030-01-01T09:00:00")
        assert Decimal(str(data["amount"])) == Decimal("250")

    def test_create_requires_team(self, client):
        response = client.post("/api/v1/deal-recurring", json=create_payload(), headers={"X-Team-Id": ""})
        assert response.status_code == 401

    def test_create_invalid_cadence(self, client):
        """Weekly without a weekday is rejected."""
        response = client.post("/api/v1/deal-recurring", json=create_payload(frequency="weekly", frequency_day=None))
        assert response.status_code == 422

    def test_create_invalid_end_condition(self, client):
        response = client.post("/api/v1/deal-recurring", json=create_payload(end_type="after_count"))
        assert response.status_code == 422

    def test_create_requires_merchant(self, client):
        response = client.post("/api/v1/deal-recurring", json=create_payload())
        assert response.status_code == 422

    def test_create_unknown_merchant(self, client, db_session):
        response = client.post("/api/v1/deal-recurring", json=create_payload(merchant_id="missing"))
        assert response.status_code == 404
        assert db_session.query(DealRecurring).count() == 0

    def test_create_merchant_without_email(self, client, db_session):
        merchant = Merchant(team_id=TEAM_ID, name="No Mail Ltd")
        db_session.add(merchant)
        db_session.commit()

        response = client.post("/api/v1/deal-recurring", json=create_payload(merchant_id=merchant.id))
        assert response.status_code == 400
        assert "email" in response.json()["detail"]

    def test_create_from_deal(self, client, db_session, sample_merchant):
        """The deal becomes sequence 1 and a retry returns the same series."""
        deal = Deal(
            team_id=TEAM_ID,
            deal_number="DEAL-0001",
            merchant_id=sample_merchant.id,
            issue_date=utc(2024, 1, 1, 9),
        )
        db_session.add(deal)
        db_session.commit()
        payload = create_payload(merchant_id=sample_merchant.id, deal_id=deal.id)

        response = client.post("/api/v1/deal-recurring", json=payload)
        assert response.status_code == 200
        data = response.json()
        assert data["deals_generated"] == 1
        assert data["next_scheduled_at"].startswith("2024-02-01T09:00:00")

        retry = client.post("/api/v1/deal-recurring", json=payload)
        assert retry.status_code == 200
        assert retry.json()["id"] == data["id"]
        assert db_session.query(DealRecurring).count() == 1

    def test_create_from_unknown_deal(self, client, sample_merchant):
        response = client.post(
            "/api/v1/deal-recurring",
            json=create_payload(merchant_id=sample_merchant.id, deal_id="missing")
        )
        assert response.status_code == 404

    def test_list(self, client, sample_recurring):
        response = client.get("/api/v1/deal-recurring")
        assert response.status_code == 200
        data = response.json()
        assert [r["id"] for r in data["data"]] == [sample_recurring.id]
        assert data["meta"]["has_next_page"] is False

    def test_list_status_filter(self, client, sample_recurring):
        response = client.get("/api/v1/deal-recurring", params={"status": "paused"})
        assert response.status_code == 200
        assert response.json()["data"] == []

    def test_get(self, client, sample_recurring):
        response = client.get(f"/api/v1/deal-recurring/{sample_recurring.id}")
        assert response.status_code == 200
        assert response.json()["frequency"] == "monthly_date"

    def test_get_other_team(self, client, sample_recurring):
        response = client.get(f"/api/v1/deal-recurring/{sample_recurring.id}", headers={"X-Team-Id": "team-2"})
        assert response.status_code == 404

    def test_update(self, client, sample_recurring):
        response = client.patch(f"/api/v1/deal-recurring/{sample_recurring.id}", json={"merchant_name": "Acme Ltd"})
        assert response.status_code == 200
        assert response.json()["merchant_name"] == "Acme Ltd"

    def test_update_inconsistent_end_condition(self, client, sample_recurring):
        response = client.patch(f"/api/v1/deal-recurring/{sample_recurring.id}", json={"end_type": "on_date"})
        assert response.status_code == 400

    @pytest.mark.parametrize("name", ["end_type", "frequency", "timezone", "merchant_id"])
    def test_update_cannot_clear_required_field(self, client, sample_recurring, name):
        response = client.patch(f"/api/v1/deal-recurring/{sample_recurring.id}", json={name: None})
        assert response.status_code == 422

    def test_update_unknown_merchant(self, client, sample_recurring):
        response = client.patch(f"/api/v1/deal-recurring/{sample_recurring.id}", json={"merchant_id": "missing"})
        assert response.status_code == 404

    def test_cancel_reverts_scheduled_deal(self, client, db_session, sample_recurring):
        deal = Deal(
            team_id=TEAM_ID,
            deal_number="DEAL-0001",
            status=DealStatus.scheduled,
            deal_recurring_id=sample_recurring.id,
            recurring_sequence=1,
        )
        db_session.add(deal)
        db_session.commit()

        response = client.delete(f"/api/v1/deal-recurring/{sample_recurring.id}")
        assert response.status_code == 200
        db_session.refresh(deal)
        assert deal.status == DealStatus.draft

    def test_pause_and_resume(self, client, sample_recurring):
        response = client.post(f"/api/v1/deal-recurring/{sample_recurring.id}/pause")
        assert response.status_code == 200
        assert response.json()["status"] == "paused"

        response = client.post(f"/api/v1/deal-recurring/{sample_recurring.id}/resume")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "active"
        assert data["consecutive_failures"] == 0

    def test_cancel(self, client, sample_recurring):
        response = client.delete(f"/api/v1/deal-recurring/{sample_recurring.id}")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "canceled"
        assert data["next_scheduled_at"] is None

        # Canceled series cannot be paused
        response = client.post(f"/api/v1/deal-recurring/{sample_recurring.id}/pause")
        assert response.status_code == 400

    def test_upcoming(self, client, sample_recurring):
        response = client.get(f"/api/v1/deal-recurring/{sample_recurring.id}/upcoming", params={"limit": 3})
        assert response.status_code == 200
        data = response.json()
        assert len(data["deals"]) == 3
        assert data["deals"][1]["date"].startswith("2024-02-01T09:00:00")
        assert data["summary"]["has_end_date"] is False
        assert data["summary"]["currency"] == "USD"

    def test_upcoming_not_found(self, client):
        response = client.get("/api/v1/deal-recurring/missing/upcoming")
        assert response.status_code == 404


class TestDealRecurringInfoAPI:
    """Test series details for a deal."""

    def test_info(self, client, db_session, sample_recurring):
        deal = Deal(
            team_id=TEAM_ID,
            deal_number="DEAL-0001",
            deal_recurring_id=sample_recurring.id,
            recurring_sequence=1,
        )
        db_session.add(deal)
        db_session.commit()

        response = client.get(f"/api/v1/deals/{deal.id}/recurring-info")
        assert response.status_code == 200
        data = response.json()
        assert data["recurring_id"] == sample_recurring.id
        assert data["sequence"] == 1

    def test_info_unknown_deal(self, client):
        response = client.get("/api/v1/deals/missing/recurring-info")
        assert response.status_code == 404

    def test_info_other_team(self, client, db_session, sample_recurring):
        deal = Deal(
            team_id=TEAM_ID,
            deal_number="DEAL-0001",
            deal_recurring_id=sample_recurring.id,
            recurring_sequence=1,
        )
        db_session.add(deal)
        db_session.commit()

        response = client.get(f"/api/v1/deals/{deal.id}/recurring-info", headers={"X-Team-Id": "team-2"})
        assert response.status_code == 404

    def test_info_requires_team(self, client):
        response = client.get("/api/v1/deals/missing/recurring-info", headers={"X-Team-Id": ""})
        assert response.status_code == 401


class TestSchedulerAPI:
    """Test manual scheduler triggers."""

    def test_run(self, client, db_session, sample_recurring):
        response = client.post("/api/v1/scheduler/run")
        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 1
        assert data["results"][0]["recurring_id"] == sample_recurring.id
        assert db_session.query(Deal).count() == 1

    def test_notify(self, client):
        response = client.post("/api/v1/scheduler/notify")
        assert response.status_code == 200
        assert response.json()["notified"] == 0
