from datetime import date, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from database import Base


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _wallet(client: TestClient, name: str = "Checking") -> int:
    resp = client.post("/wallets", json={"name": name, "kind": "bank"})
    assert resp.status_code == 201
    return resp.json()["id"]


def _recurring_expense(client: TestClient, wallet_id: int) -> dict:
    resp = client.post(
        "/transactions",
        json={
            "type": "expense",
            "amount_cents": 1200,
            "description": "Streaming",
            "date": datetime(2024, 1, 5, 9, 0).isoformat(),
            "wallet_id": wallet_id,
            "recurrence": "monthly",
        },
    )
    assert resp.status_code == 201
    return resp.json()


def test_create_recurring_transaction_returns_first_occurrence(client):
    wallet_id = _wallet(client)
    body = _recurring_expense(client, wallet_id)

    assert body["parent_id"] is not None
    assert body["is_recurring"] is False
    assert body["occurrence_date"] == "2024-01-05T09:00:00"

    template = client.get(f"/transactions/{body['parent_id']}").json()
    assert template["is_recurring"] is True
    assert template["recurrence"] == "monthly"

    wallets = client.get("/wallets").json()
    assert wallets[0]["balance_cents"] == -1200


def test_delete_defaults_to_single_scope(client):
    wallet_id = _wallet(client)
    body = _recurring_expense(client, wallet_id)

    resp = client.delete(f"/transactions/{body['id']}")

    assert resp.status_code == 200
    assert resp.json() == {"scope": "single", "deleted_count": 1, "series_ended": False}
    assert client.get(f"/transactions/{body['id']}").status_code == 404


def test_delete_series_scope_ends_series(client):
    wallet_id = _wallet(client)
    body = _recurring_expense(client, wallet_id)

    resp = client.delete(f"/transactions/{body['id']}", params={"scope": "series"})

    assert resp.status_code == 200
    assert resp.json()["deleted_count"] == 2
    assert resp.json()["series_ended"] is True


def test_patch_with_invalid_scope_combination_is_bad_request(client):
    wallet_id = _wallet(client)
    body = _recurring_expense(client, wallet_id)

    resp = client.patch(
        f"/transactions/{body['id']}",
        params={"scope": "series"},
        json={"date": "2024-01-06T09:00:00"},
    )

    assert resp.status_code == 400


def test_patch_series_reports_affected_rows(client):
    wallet_id = _wallet(client)
    body = _recurring_expense(client, wallet_id)

    resp = client.patch(
        f"/transactions/{body['id']}",
        params={"scope": "series"},
        json={"amount_cents": 1500},
    )

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["scope"] == "series"
    assert payload["affected_count"] == 2
    assert payload["transaction"]["amount_cents"] == 1500


def test_unknown_transaction_is_404(client):
    assert client.get("/transactions/4242").status_code == 404
    assert client.delete("/transactions/4242").status_code == 404


def test_other_user_gets_403(client):
    wallet_id = _wallet(client)
    body = _recurring_expense(client, wallet_id)

    resp = client.delete(f"/transactions/{body['id']}", headers={"X-User-Id": "2"})

    assert resp.status_code == 403


def test_budget_overview_shape(client):
    wallet_id = _wallet(client)
    client.post(
        "/transactions",
        json={
            "type": "expense",
            "amount_cents": 5000,
            "date": "2024-01-16T12:00:00",
            "wallet_id": wallet_id,
        },
    )
    resp = client.post(
        "/budgets",
        json={
            "name": "Everything",
            "period": "monthly",
            "limit_cents": 20000,
            "start_date": "2024-01-15",
        },
    )
    assert resp.status_code == 201
    budget_id = resp.json()["id"]

    overview = client.get("/budgets/overview", params={"date": "2024-01-20"}).json()
    assert overview["period"] == "monthly"
    assert overview["from"] == "2024-01-01T00:00:00"
    assert overview["summary"]["total_spent_cents"] == 5000
    assert overview["summary"]["remaining_cents"] == 15000
    assert overview["budgets"][0]["from"] == "2024-01-15T00:00:00"

    progress = client.get(
        f"/budgets/{budget_id}/progress", params={"date": "2024-01-20"}
    ).json()
    assert progress["spent_cents"] == 5000
    assert progress["progress"] == 0.25

    assert client.get("/budgets", params={"date": "2024-01-20"}).json() == overview


def test_budget_limit_must_be_positive(client):
    resp = client.post(
        "/budgets",
        json={"period": "weekly", "limit_cents": 0, "start_date": "2024-01-01"},
    )
    assert resp.status_code == 422


def test_close_period_writes_history(client):
    resp = client.post(
        "/budgets",
        json={
            "period": "daily",
            "limit_cents": 1000,
            "start_date": (date.today() - timedelta(days=2)).isoformat(),
        },
    )
    budget_id = resp.json()["id"]

    resp = client.post(f"/budgets/{budget_id}/close-period")

    assert resp.status_code == 200
    assert resp.json()["closed"] is True
    history = client.get(f"/budgets/{budget_id}/history").json()
    assert len(history) == len(resp.json()["snapshots"])
    assert history[0]["forced"] is True


def test_deleted_budget_is_404(client):
    resp = client.post(
        "/budgets",
        json={"period": "weekly", "limit_cents": 1000, "start_date": "2024-01-01"},
    )
    budget_id = resp.json()["id"]

    assert client.delete(f"/budgets/{budget_id}").status_code == 204
    assert client.get(f"/budgets/{budget_id}").status_code == 404


def test_lifespan_starts_and_stops_scheduler(monkeypatch):
    calls = []

    class RecordingScheduler:
        def start(self):
            calls.append("start")

        def stop(self):
            calls.append("stop")

    monkeypatch.setattr(main, "scheduler_manager", RecordingScheduler())

    with TestClient(main.app):
        assert calls == ["start"]
    assert calls == ["start", "stop"]
