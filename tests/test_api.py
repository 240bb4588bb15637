import gzip
import json

import pytest
from fastapi.testclient import TestClient

from csrf import generate_csrf_token, validate_csrf_token
from database import Base, make_engine, make_session_factory
from main import app, get_db


STATEMENT = (
    "date,amount,direction,merchant,category,balance\n"
    "2024-01-05,13.49,debit,Netflix,Bills & Subscriptions,986.51\n"
    "2024-02-05,13.49,debit,Netflix,Bills & Subscriptions,973.02\n"
    "2024-03-05,13.49,debit,Netflix,Bills & Subscriptions,959.53\n"
    "2024-03-10,40.00,debit,Carrefour,Food,919.53\n"
)


@pytest.fixture()
def client():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    factory = make_session_factory(engine)

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(client) -> dict[str, str]:
    token = client.get("/api/csrf").json()["csrf_token"]
    return {"X-CSRF-Token": token}


def upload(content: str, name: str = "statement.csv"):
    return {"file": (name, content.encode("utf-8"), "text/csv")}


def test_csrf_token_round_trip():
    token = generate_csrf_token()
    assert validate_csrf_token(token)
    assert not validate_csrf_token(token + "x")
    assert not validate_csrf_token("")
    assert not validate_csrf_token(None)


def test_mutations_require_csrf_header(client):
    response = client.post("/api/accounts", json={"name": "Checking"})
    assert response.status_code == 403
    response = client.post(
        "/api/accounts", json={"name": "Checking"}, headers={"X-CSRF-Token": "forged"}
    )
    assert response.status_code == 403
    assert client.get("/api/accounts").json() == []


def test_account_and_checkpoint_flow(client):
    headers = auth(client)
    account = client.post("/api/accounts", json={"name": "Checking"}, headers=headers).json()
    assert account["balance_cents"] == 0

    response = client.post(
        f"/api/accounts/{account['id']}/initial-balance",
        json={"initial_balance_cents": 10_000, "initial_balance_date": "2024-01-01"},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["balance_cents"] == 10_000

    checkpoint = client.post(
        f"/api/accounts/{account['id']}/checkpoints",
        json={"as_of_date": "2024-02-01", "balance_cents": 12_345},
        headers=headers,
    )
    assert checkpoint.status_code == 201
    checkpoint_id = checkpoint.json()["id"]
    accounts = client.get("/api/accounts").json()
    assert accounts[0]["balance_cents"] == 12_345

    updated = client.put(
        f"/api/checkpoints/{checkpoint_id}",
        json={"as_of_date": "2024-02-01", "balance_cents": 500},
        headers=headers,
    )
    assert updated.json()["balance_cents"] == 500
    assert client.delete(f"/api/checkpoints/{checkpoint_id}", headers=headers).status_code == 204
    assert client.get(f"/api/accounts/{account['id']}/checkpoints").json() == []
    assert client.delete(f"/api/checkpoints/{checkpoint_id}", headers=headers).status_code == 404


def test_import_preview_commit_and_detect(client):
    headers = auth(client)
    account = client.post("/api/accounts", json={"name": "Checking"}, headers=headers).json()
    form = {"account_id": str(account["id"])}

    preview = client.post("/api/import/preview", files=upload(STATEMENT), data=form, headers=headers)
    assert preview.status_code == 200
    body = preview.json()
    assert body["total_rows"] == 4
    assert body["new_count"] == 4
    assert body["date_range"] == {"start": "2024-01-05", "end": "2024-03-10"}

    commit = client.post("/api/import/commit", files=upload(STATEMENT), data=form, headers=headers)
    assert commit.status_code == 200
    assert commit.json()["imported"] == 4
    assert commit.json()["recurring_detected"] == 1

    txns = client.get(f"/api/accounts/{account['id']}/transactions").json()
    assert [t["date"] for t in txns][0] == "2024-03-10"
    assert txns[0]["balance_after_cents"] == 91_953

    balance = client.get(f"/api/accounts/{account['id']}/balance", params={"as_of": "2024-02-28"})
    assert balance.json()["balance_cents"] == 97_302

    items = client.get("/api/recurring", params={"active_only": True}).json()
    assert len(items) == 1
    assert items[0]["merchant"] == "Netflix"
    assert items[0]["amount_cents"] == -1349
    assert items[0]["is_shown_active"] is True

    again = client.post("/api/import/preview", files=upload(STATEMENT), data=form, headers=headers)
    assert again.json()["duplicate_count"] == 4


def test_import_rejects_bad_files(client):
    headers = auth(client)
    response = client.post(
        "/api/import/preview", files=upload("hello;world\n", "notes.csv"), headers=headers
    )
    assert response.status_code == 400
    response = client.post(
        "/api/import/preview", files=upload(STATEMENT, "statement.pdf"), headers=headers
    )
    assert response.status_code == 400
    response = client.post(
        "/api/import/preview", files=upload(STATEMENT), data={"account_id": "99"}, headers=headers
    )
    assert response.status_code == 404


def test_recurring_transitions_and_errors(client):
    headers = auth(client)
    account = client.post("/api/accounts", json={"name": "Checking"}, headers=headers).json()
    created = client.post(
        "/api/recurring",
        json={"account_id": account["id"], "name": "Car Loan", "amount_cents": 25_000, "type": "loan"},
        headers=headers,
    )
    assert created.status_code == 201
    item = created.json()
    assert item["amount_cents"] == -25_000

    paused = client.post(f"/api/recurring/{item['id']}/pause", headers=headers)
    assert paused.json()["status"] == "paused"
    again = client.post(f"/api/recurring/{item['id']}/pause", headers=headers)
    assert again.status_code == 400

    income = client.put(
        f"/api/recurring/{item['id']}/type", json={"type": "income"}, headers=headers
    )
    assert income.json()["amount_cents"] == 25_000
    assert income.json()["category"] == "Income"

    cancelled = client.post(f"/api/recurring/{item['id']}/cancel", headers=headers)
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["end_date"] is not None

    assert client.post("/api/recurring/999/pause", headers=headers).status_code == 404
    assert client.post(f"/api/recurring/{item['id']}/explode", headers=headers).status_code == 404
    merged = client.post(
        "/api/recurring/merge", json={"target_id": item["id"], "source_id": item["id"]}, headers=headers
    )
    assert merged.status_code == 400

    sync = client.post("/api/recurring/sync", headers=headers)
    assert sync.status_code == 200
    assert sync.json()["errors"] == []

    assert client.delete(f"/api/recurring/{item['id']}", headers=headers).status_code == 204
    assert client.get("/api/recurring").json() == []


def test_backup_export_validate_restore(client):
    headers = auth(client)
    account = client.post("/api/accounts", json={"name": "Checking"}, headers=headers).json()
    client.post(
        "/api/import/commit",
        files=upload(STATEMENT),
        data={"account_id": str(account["id"])},
        headers=headers,
    )

    exported = client.get("/api/backup/export")
    assert exported.status_code == 200
    assert "ledger-backup-" in exported.headers["content-disposition"]
    snapshot = json.loads(gzip.decompress(exported.content))
    assert snapshot["version"] == 1
    assert snapshot["meta"]["counts"]["transactions"] == 4

    plain = client.get("/api/backup/export", params={"compress": False})
    assert plain.headers["content-type"].startswith("application/json")
    # exporting is read-only
    setting_keys = {row["key"] for row in json.loads(plain.content)["tables"]["settings"]}
    assert "last_backup_at" not in setting_keys

    preview = client.post(
        "/api/backup/validate",
        files={"file": ("backup.json.gz", exported.content, "application/gzip")},
        headers=headers,
    )
    assert preview.status_code == 200
    assert preview.json()["counts"]["transactions"] == 4
    assert preview.json()["accounts_summary"] == [
        {"id": account["id"], "name": "Checking", "transactions": 4}
    ]

    broken = client.post(
        "/api/backup/validate",
        files={"file": ("backup.json", b"{", "application/json")},
        headers=headers,
    )
    assert broken.status_code == 200
    assert broken.json()["issues"][0]["level"] == "error"

    client.post(
        f"/api/accounts/{account['id']}/checkpoints",
        json={"as_of_date": "2024-03-01", "balance_cents": 0},
        headers=headers,
    )
    restored = client.post(
        "/api/backup/restore",
        files={"file": ("backup.json.gz", exported.content, "application/gzip")},
        headers=headers,
    )
    assert restored.status_code == 200
    assert restored.json()["counts"]["transactions"] == 4
    assert client.get(f"/api/accounts/{account['id']}/checkpoints").json() == []
    assert client.get("/api/accounts").json()[0]["balance_cents"] == 91_953

    bad = dict(snapshot, version="v0")
    rejected = client.post(
        "/api/backup/restore",
        files={"file": ("backup.json", json.dumps(bad).encode(), "application/json")},
        headers=headers,
    )
    assert rejected.status_code == 400
