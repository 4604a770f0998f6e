"""
Integration tests for the Loan Engine API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from loan_engine.api import create_app
from loan_engine.api.dependencies import get_engine
from loan_engine.config import LoanEngineConfig
from loan_engine.engine import LoanEngine
from loan_engine.storage import InMemoryStorage


@pytest.fixture
def engine():
    return LoanEngine(storage=InMemoryStorage(), config=LoanEngineConfig(storage_backend="memory"))


@pytest.fixture
def client(engine):
    """Test client wired to an in-memory engine"""
    app = create_app()
    app.dependency_overrides[get_engine] = lambda: engine
    return TestClient(app)


@pytest.fixture
def account_id(client):
    r = client.post("/loans", json={
        "user_id": "user-1",
        "principal_amount": "30000",
        "monthly_rate": "0.01",
        "origin_date": "2024-01-15"
    })
    assert r.status_code == 201
    return r.json()["id"]


@pytest.fixture
def deposit_id(client, account_id):
    r = client.post("/yield-deposits", json={
        "user_id": "user-1",
        "principal_amount": "5000",
        "start_date": "2024-02-01",
        "created_by": "admin"
    })
    assert r.status_code == 201
    return r.json()["id"]


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert data["service"] == "loan_engine_api"


class TestLoanEndpoints:
    """Accounts, transactions, replay and analytics"""

    def test_get_account(self, client, account_id):
        r = client.get(f"/loans/{account_id}")
        assert r.status_code == 200
        data = r.json()
        assert data["user_id"] == "user-1"
        assert data["current_balance"] == "30000.00"
        assert data["origin_date"] == "2024-01-15"

    def test_unknown_account(self, client):
        r = client.get("/loans/missing")
        assert r.status_code == 404
        assert r.json()["detail"]["code"] == "NOT_FOUND"

    def test_record_transaction(self, client, account_id):
        r = client.post(f"/loans/{account_id}/transactions", json={
            "transaction_type": "bonus",
            "amount": "150",
            "transaction_date": "2024-02-20",
            "bonus_percentage": "0.5"
        })
        assert r.status_code == 201
        assert r.json()["transaction_type"] == "bonus"

        listed = client.get(f"/loans/{account_id}/transactions").json()["transactions"]
        assert [t["transaction_type"] for t in listed][-1] == "bonus"

    def test_invalid_transaction(self, client, account_id):
        r = client.post(f"/loans/{account_id}/transactions", json={
            "transaction_type": "gift",
            "amount": "10",
            "transaction_date": "2024-02-20"
        })
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "INVALID_TRANSACTION"

    def test_replay_and_monthly_balances(self, client, account_id):
        r = client.post(f"/loans/{account_id}/replay", json={"as_of": "2024-04-15"})
        assert r.status_code == 200
        assert r.json()["closing_balance"] == "30909.03"

        rows = client.get(f"/loans/{account_id}/monthly-balances").json()["monthly_balances"]
        assert [row["month"] for row in rows] == ["2024-01", "2024-02", "2024-03"]
        assert client.get(f"/loans/{account_id}").json()["current_balance"] == "30909.03"

    def test_analytics_periods(self, client, account_id):
        client.post(f"/loans/{account_id}/replay", json={"as_of": "2024-04-15"})

        six = client.get(f"/loans/{account_id}/analytics", params={"period": "6", "as_of": "2024-06-10"})
        assert six.status_code == 200
        points = six.json()["points"]
        assert len(points) == 6
        assert points[-1]["month"] == "2024-06"
        assert points[-1]["balance"] == "31845.60"
        assert points[-1]["monthly_payment"] == "315.30"
        assert points[-1]["source"] == "projected"
        assert points[0]["source"] == "actual"

        fallback = client.get(f"/loans/{account_id}/analytics", params={"period": "invalid"})
        assert fallback.json()["period"] == 24
        assert len(fallback.json()["points"]) == 24

    def test_analytics_owner_mismatch(self, client, account_id):
        r = client.get(f"/loans/{account_id}/analytics", params={"owner_id": "intruder"})
        assert r.status_code == 404


class TestYieldDepositEndpoints:

    def test_create_and_get(self, client, deposit_id):
        data = client.get(f"/yield-deposits/{deposit_id}").json()
        assert data["status"] == "active"
        assert data["principal_amount"] == "5000.00"
        assert data["annual_payout"] == "600.00"
        assert data["next_payout_date"] == "2025-02-01"

    def test_create_requires_loan_account(self, client):
        r = client.post("/yield-deposits", json={
            "user_id": "nobody",
            "principal_amount": "100",
            "start_date": "2024-02-01"
        })
        assert r.status_code == 404

    def test_invalid_principal(self, client, account_id):
        r = client.post("/yield-deposits", json={
            "user_id": "user-1",
            "principal_amount": "-1",
            "start_date": "2024-02-01"
        })
        assert r.status_code == 400

    def test_list_and_filter(self, client, deposit_id):
        data = client.get("/yield-deposits", params={"user_id": "user-1", "status": "active"}).json()
        assert data["count"] == 1
        assert data["deposits"][0]["id"] == deposit_id
        assert client.get("/yield-deposits", params={"status": "inactive"}).json()["count"] == 0

    def test_update(self, client, deposit_id):
        r = client.patch(f"/yield-deposits/{deposit_id}", json={
            "principal_amount": "4000",
            "status": "inactive",
            "updated_by": "admin"
        })
        assert r.status_code == 200
        assert r.json()["principal_amount"] == "4000.00"
        assert r.json()["status"] == "inactive"

    def test_bad_status_transition(self, client, deposit_id):
        client.patch(f"/yield-deposits/{deposit_id}", json={"status": "completed"})
        r = client.patch(f"/yield-deposits/{deposit_id}", json={"status": "active"})
        assert r.status_code == 400

    def test_delete(self, client, account_id, deposit_id):
        r = client.delete(f"/yield-deposits/{deposit_id}", params={"deleted_by": "admin"})
        assert r.status_code == 200
        assert r.json()["deleted"] is True

        assert client.get(f"/yield-deposits/{deposit_id}").status_code == 404
        assert client.get(f"/loans/{account_id}").json()["current_balance"] == "30000.00"


class TestPayoutEndpoints:

    def test_run_is_idempotent(self, client, deposit_id):
        first = client.post("/payouts/run", json={"as_of": "2024-03-01", "processed_by": "cron"})
        assert first.status_code == 200
        assert first.json()["payments_applied"] == 1
        assert first.json()["total_amount"] == "1.64"

        second = client.post("/payouts/run", json={"as_of": "2024-03-01"}).json()
        assert second["payments_applied"] == 0
        assert second["already_processed_count"] == 1

        payouts = client.get(f"/yield-deposits/{deposit_id}/payouts").json()["payouts"]
        assert len(payouts) == 1
        assert payouts[0]["kind"] == "daily"

    def test_dry_run(self, client, deposit_id):
        r = client.post("/payouts/run", json={"as_of": "2024-03-01", "dry_run": True}).json()
        assert r["dry_run"] is True
        assert r["payments_applied"] == 1
        assert client.get(f"/yield-deposits/{deposit_id}/payouts").json()["payouts"] == []

    def test_status(self, client, deposit_id):
        before = client.get("/payouts/status", params={"as_of": "2024-03-01"}).json()
        assert before["pending_count"] == 1
        assert before["is_complete"] is False

        client.post("/payouts/run", json={"as_of": "2024-03-01"})
        after = client.get("/payouts/status", params={"as_of": "2024-03-01"}).json()
        assert after["processed_count"] == 1
        assert after["is_complete"] is True

    def test_status_unknown_kind(self, client):
        r = client.get("/payouts/status", params={"as_of": "2024-03-01", "kind": "hourly"})
        assert r.status_code == 400

    def test_apply_twice_conflicts(self, client, deposit_id):
        body = {"deposit_id": deposit_id, "payout_date": "2024-03-01"}
        assert client.post("/payouts/apply", json=body).status_code == 200

        r = client.post("/payouts/apply", json=body)
        assert r.status_code == 409
        assert r.json()["detail"]["code"] == "ALREADY_PROCESSED"


class TestWithdrawalEndpoints:

    def test_allocate(self, client, deposit_id):
        r = client.post("/withdrawals/allocate", json={"user_id": "user-1", "amount": "1200"})
        assert r.status_code == 200
        data = r.json()
        assert data["reductions"][0]["deposit_id"] == deposit_id
        assert data["reductions"][0]["new_principal"] == "3800.00"
        assert data["reductions"][0]["completed"] is False
        assert data["remainder_unallocated"] == "0.00"

    def test_allocate_require_full(self, client, deposit_id):
        r = client.post("/withdrawals/allocate", json={
            "user_id": "user-1", "amount": "6000", "require_full": True
        })
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "INSUFFICIENT_FUNDS"

    def test_complete(self, client, account_id, deposit_id):
        r = client.post("/withdrawals/complete", json={
            "account_id": account_id,
            "amount": "5000",
            "transaction_date": "2024-03-01"
        })
        assert r.status_code == 200
        data = r.json()
        assert data["transaction"]["transaction_type"] == "withdrawal"
        assert data["allocation"]["reductions"][0]["completed"] is True
        assert client.get(f"/yield-deposits/{deposit_id}").json()["status"] == "completed"

    def test_complete_exceeding_balance(self, client, account_id, deposit_id):
        r = client.post("/withdrawals/complete", json={
            "account_id": account_id,
            "amount": "35000.01",
            "transaction_date": "2024-03-01"
        })
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "INSUFFICIENT_FUNDS"
