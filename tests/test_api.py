import pytest
from fastapi.testclient import TestClient

from config import get_settings
from database import make_engine, make_session_factory
from events import EventBus
from main import create_app
from storage import LocalStore, PersistenceError
from tracker import FinanceTracker


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("FINANCE_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("FINANCE_DATABASE_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def tracker():
    engine = make_engine("sqlite:///:memory:")
    LocalStore.create_schema(engine)
    return FinanceTracker(LocalStore(make_session_factory(engine)), bus=EventBus())


@pytest.fixture
def client(tracker):
    return TestClient(create_app(tracker, start_scheduler=False))


def _checking(client) -> str:
    resp = client.post("/api/accounts", json={"name": "Checking", "cost_basis_cents": 100_000})
    assert resp.status_code == 201
    return resp.json()["id"]


def test_transaction_lifecycle_updates_balance(client):
    checking_id = _checking(client)

    resp = client.post(
        "/api/transactions",
        json={
            "amount_cents": 2_500,
            "kind": "expense",
            "category": "Groceries",
            "account_id": checking_id,
            "date": "2024-03-05",
        },
    )
    assert resp.status_code == 201
    txn_id = resp.json()["id"]
    assert client.get("/api/accounts").json()[0]["current_value_cents"] == 97_500

    resp = client.patch(f"/api/transactions/{txn_id}", json={"amount_cents": 3_000})
    assert resp.status_code == 200
    assert client.get("/api/accounts").json()[0]["current_value_cents"] == 97_000

    resp = client.delete(f"/api/transactions/{txn_id}")
    assert resp.json() == {"removed": [txn_id]}
    assert client.get("/api/accounts").json()[0]["current_value_cents"] == 100_000


def test_invalid_and_missing_map_to_status_codes(client):
    checking_id = _checking(client)

    resp = client.post(
        "/api/transactions",
        json={
            "amount_cents": 500,
            "kind": "transfer",
            "account_id": checking_id,
            "date": "2024-03-05",
        },
    )
    assert resp.status_code == 400

    resp = client.post(
        "/api/transactions",
        json={
            "amount_cents": 500,
            "kind": "expense",
            "category": "Food",
            "account_id": "missing",
            "date": "2024-03-05",
        },
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Account not found"

    assert client.get("/api/transactions/nope").status_code == 404
    assert client.delete("/api/rules/nope").status_code == 404


def test_rule_materialize_and_preview(client):
    checking_id = _checking(client)
    resp = client.post(
        "/api/rules",
        json={
            "amount_cents": 1_000,
            "kind": "expense",
            "category": "Rent",
            "account_id": checking_id,
            "frequency": "monthly",
            "anchor_date": "2024-01-31",
            "max_occurrences": 3,
        },
    )
    assert resp.status_code == 201
    rule_id = resp.json()["id"]

    resp = client.post("/api/rules/materialize", params={"as_of": "2024-02-29"})
    assert [t["date"] for t in resp.json()["created"]] == ["2024-02-29"]

    resp = client.get(f"/api/rules/{rule_id}/preview", params={"months": 1})
    assert resp.json()["dates"] == ["2024-03-31"]

    resp = client.get("/api/transactions", params={"rule_id": rule_id})
    assert [t["date"] for t in resp.json()] == ["2024-01-31", "2024-02-29"]


def test_liability_autopay_through_api(client):
    checking_id = _checking(client)
    resp = client.post(
        "/api/liabilities",
        json={
            "name": "Car Loan",
            "base_balance_cents": 1_000_000,
            "monthly_payment_cents": 5_000,
            "payment_account_id": checking_id,
            "payment_day": 31,
            "payment_periods": 12,
            "start_date": "2024-01-31",
        },
    )
    assert resp.status_code == 201
    loan_id = resp.json()["id"]

    rule = client.get(f"/api/liabilities/{loan_id}/rule").json()
    assert rule["category"] == "Loan Repayment"
    assert rule["max_occurrences"] == 12

    assert client.delete(f"/api/liabilities/{loan_id}").status_code == 200
    assert client.get(f"/api/liabilities/{loan_id}/rule").status_code == 404
    assert client.get("/api/rules").json() == []
    assert client.get("/api/accounts").json()[0]["current_value_cents"] == 100_000


def test_persistence_failure_returns_503_and_keeps_change(client, tracker, monkeypatch):
    def failing_save(key, records):
        raise PersistenceError(f"Local save failed for {key}")

    monkeypatch.setattr(tracker.local, "save", failing_save)

    resp = client.post("/api/accounts", json={"name": "Checking"})

    assert resp.status_code == 503
    assert [a.name for a in tracker.accounts.list()] == ["Checking"]
    assert "local:accounts" in tracker.pending


def test_export_csv_resolves_account_names(client):
    checking_id = _checking(client)
    client.post(
        "/api/transactions",
        json={
            "amount_cents": 1_250,
            "kind": "expense",
            "category": "=cmd",
            "account_id": checking_id,
            "date": "2024-03-05",
        },
    )

    resp = client.get("/api/transactions/export.csv")

    lines = resp.text.splitlines()
    assert lines[0] == "Date,Kind,Amount,Category,Account,To Account,Note"
    assert lines[1].startswith("2024-03-05,expense,12.50,")
    assert "Checking" in lines[1]
    assert "\t=cmd" in lines[1]


def test_rule_update_through_api_keeps_ledger_consistent(client, tracker):
    checking_id = _checking(client)
    rule = {
        "amount_cents": 1_000,
        "kind": "expense",
        "category": "Gym",
        "account_id": checking_id,
        "frequency": "monthly",
        "anchor_date": "2024-01-31",
    }
    rule_id = client.post("/api/rules", json=rule).json()["id"]
    client.post("/api/rules/materialize", params={"as_of": "2024-03-31"})

    resp = client.put(f"/api/rules/{rule_id}", json={**rule, "anchor_date": "2023-12-31"})
    assert resp.status_code == 200
    assert resp.json()["materialized_count"] == 4

    resp = client.post("/api/rules/materialize", params={"as_of": "2024-03-31"})
    assert resp.json()["created"] == []
    resp = client.get("/api/transactions", params={"rule_id": rule_id})
    assert [t["date"] for t in resp.json()] == ["2024-01-31", "2024-02-29", "2024-03-31"]

    balance = client.get("/api/accounts").json()[0]["current_value_cents"]
    assert balance == 100_000 - 3 * 1_000
    resp = client.post(f"/api/accounts/{checking_id}/recompute")
    assert resp.json()["value_cents"] == balance

    assert client.put("/api/rules/nope", json=rule).status_code == 404
