"""
Tests for the FastAPI application.

Uses FastAPI's TestClient against an in-memory engine.
"""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from src.api.app import create_app
from src.engine import build_engine
from src.integrations.attachments import LocalAttachmentStorage
from src.storage.persistence import InMemoryPersistenceAdapter

from conftest import FixedClock, claim_input, make_settings


MANAGER = {"X-Actor-Id": "MGR-1", "X-Actor-Role": "manager", "X-Actor-Name": "Sipho Dlamini"}
HR = {"X-Actor-Id": "HR-1", "X-Actor-Role": "HR"}
EMPLOYEE = {"X-Actor-Id": "EMP-1", "X-Actor-Role": "employee"}


@pytest.fixture
def engine(tmp_path):
    settings = make_settings(rebroadcast_delays=(), department_budgets={"Sales": 1000})
    return build_engine(
        settings,
        adapter=InMemoryPersistenceAdapter(),
        attachments=LocalAttachmentStorage(tmp_path),
        clock=FixedClock(datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)),
    )


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine)) as test_client:
        yield test_client


def submit(client, **overrides):
    response = client.post("/claims", json=claim_input(**overrides), headers=EMPLOYEE)
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["claims"] == 0
        assert data["last_refreshed_at"] is not None


class TestClaims:

    def test_create_and_get(self, client):
        created = submit(client)

        assert created["status"] == "pending"
        assert created["amount"] == "450"
        assert created["tax_amount"] == "67.50"
        assert created["is_flagged"] is False

        fetched = client.get(f"/claims/{created['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == created["id"]

    def test_employee_defaults_to_caller(self, client):
        payload = claim_input()
        del payload["employee_id"]
        response = client.post("/claims", json=payload, headers={"X-Actor-Id": "EMP-7"})
        assert response.json()["employee_id"] == "EMP-7"

    def test_invalid_submission_lists_violations(self, client):
        response = client.post(
            "/claims",
            json=claim_input(amount="0", description="", attachments=[]),
            headers=EMPLOYEE,
        )

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert [v.split(":")[0] for v in error["violations"]] == ["amount", "description", "attachments"]

    def test_unknown_claim(self, client):
        response = client.get("/claims/CLM-missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_list_with_filters(self, client):
        submit(client)
        submit(client, department="IT", category="Communications", amount="99")

        assert client.get("/claims").json()["count"] == 2
        it_claims = client.get("/claims", params={"department": "IT"}).json()["claims"]
        assert [c["category"] for c in it_claims] == ["Communications"]
        assert client.get("/claims", params={"status": "approved"}).json()["count"] == 0

    def test_patch(self, client):
        created = submit(client)
        response = client.patch(f"/claims/{created['id']}", json={"description": "Fuel and tolls"})

        assert response.status_code == 200
        assert response.json()["description"] == "Fuel and tolls"
        assert response.json()["version"] == 2

    def test_patch_cannot_change_workflow_fields(self, client):
        created = submit(client)
        response = client.patch(f"/claims/{created['id']}", json={"status": "approved"})

        assert response.status_code == 422
        assert client.get(f"/claims/{created['id']}").json()["status"] == "pending"

    def test_patch_cannot_change_flag_threshold(self, client):
        created = submit(client)
        response = client.patch(f"/claims/{created['id']}", json={"risk_threshold": 0})

        assert response.status_code == 422
        assert response.json()["error"]["violations"] == ["risk_threshold: is read-only"]
        assert client.get(f"/claims/{created['id']}").json()["is_flagged"] is False

    def test_delete(self, client):
        created = submit(client)
        assert client.delete(f"/claims/{created['id']}").status_code == 204
        assert client.get(f"/claims/{created['id']}").status_code == 404


class TestWorkflow:

    def test_approve_then_approve_again(self, client):
        created = submit(client)

        first = client.post(f"/claims/{created['id']}/approve", headers=MANAGER)
        assert first.status_code == 200
        assert first.json()["status"] == "approved"
        assert first.json()["reviewer_name"] == "Sipho Dlamini"

        second = client.post(f"/claims/{created['id']}/approve", headers=MANAGER)
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "INVALID_TRANSITION"

    def test_employee_cannot_approve(self, client):
        created = submit(client)
        response = client.post(f"/claims/{created['id']}/approve", headers=EMPLOYEE)
        assert response.status_code == 403

    def test_reject_needs_reason(self, client):
        created = submit(client)

        missing = client.post(f"/claims/{created['id']}/reject", json={}, headers=MANAGER)
        assert missing.status_code == 422

        rejected = client.post(
            f"/claims/{created['id']}/reject", json={"reason": "Personal expense"}, headers=MANAGER
        )
        assert rejected.json()["status"] == "rejected"

    def test_escalation_moves_claim_between_queues(self, client):
        created = submit(client)

        escalated = client.post(
            f"/claims/{created['id']}/escalate", json={"reason": "Above my limit"}, headers=MANAGER
        )
        assert escalated.json()["escalation_level"] == 1

        assert client.get("/approvals/queue", headers=MANAGER).json()["count"] == 0
        assert client.get("/approvals/queue", headers=HR).json()["count"] == 1

    def test_bulk_approve(self, client):
        first = submit(client)
        second = submit(client, amount="120", description="Toll fees")

        response = client.post(
            "/approvals/bulk",
            json={"claim_ids": [first["id"], second["id"], "CLM-missing"]},
            headers=HR,
        )

        results = response.json()["results"]
        assert [r["success"] for r in results] == [True, True, False]
        assert results[2]["error_code"] == "NOT_FOUND"


class TestAnalytics:

    def test_summaries(self, client):
        submit(client)
        submit(client, department="IT", employee_id="EMP-2", amount="1200")

        departments = client.get("/analytics/departments").json()["departments"]
        assert [d["department"] for d in departments] == ["IT", "Sales"]

        overview = client.get("/analytics/overview").json()
        assert overview["total_claims"] == 2
        assert overview["claims_by_status"]["pending"] == 2

        assert len(client.get("/analytics/categories").json()["categories"]) == 1
        assert len(client.get("/analytics/employees").json()["employees"]) == 2

    def test_budget(self, client):
        submit(client, amount="850")
        budget = client.get("/analytics/budget/Sales").json()
        assert budget["status"] == "warning"
        assert budget["utilization_rate"] == 85.0

    def test_trend_bounds(self, client):
        assert len(client.get("/analytics/trend", params={"periods": 3}).json()["trend"]) == 3
        assert client.get("/analytics/trend", params={"periods": 0}).status_code == 422

    def test_approval_statistics(self, client):
        created = submit(client)
        client.post(f"/claims/{created['id']}/approve", headers=MANAGER)

        stats = client.get("/analytics/approvals", params={"actor_id": "MGR-1"}).json()
        assert stats["approved_count"] == 1
        assert stats["total_amount_approved"] == "450"

    def test_fraud(self, client):
        submit(client)
        submit(client)

        cases = client.get("/analytics/fraud").json()["cases"]
        assert len(cases) == 2
        assert client.get("/analytics/fraud", params={"min_score": 90}).json()["cases"] == []
