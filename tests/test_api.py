import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from identity import issue_token
from main import app, get_db, get_receipt_scanner
from models import User
from schemas import ScannedReceipt


class FakeScanner:
    def scan(self, content, mime_type):
        return ScannedReceipt(amount_cents=450, merchant_name="Cafe", category="food")


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with SessionLocal() as session:
        session.add_all([User(id=1, email="ana@example.com"), User(id=2, email="bo@example.com")])
        session.commit()

    def override_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_receipt_scanner] = FakeScanner
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user_id: int) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user_id)}"}


def test_requests_without_token_are_rejected(client):
    assert client.get("/api/accounts").status_code == 401
    resp = client.get("/api/accounts", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


def test_transaction_lifecycle_updates_balance(client):
    resp = client.post(
        "/api/accounts",
        json={"name": "Main", "balance_cents": 100_000},
        headers=auth(1),
    )
    assert resp.status_code == 201
    account = resp.json()
    assert account["is_default"] is True

    payload = {
        "account_id": account["id"],
        "type": "EXPENSE",
        "amount_cents": 20_000,
        "date": "2024-03-01",
        "category": "food",
    }
    resp = client.post("/api/transactions", json=payload, headers=auth(1))
    assert resp.status_code == 201
    txn = resp.json()

    payload["amount_cents"] = 5_000
    resp = client.put(f"/api/transactions/{txn['id']}", json=payload, headers=auth(1))
    assert resp.status_code == 200

    detail = client.get(f"/api/accounts/{account['id']}", headers=auth(1)).json()
    assert detail["account"]["balance_cents"] == 95_000
    assert detail["account"]["transaction_count"] == 1

    resp = client.post(
        "/api/transactions/bulk-delete", json={"ids": [txn["id"]]}, headers=auth(1)
    )
    assert resp.json() == {"success": True, "deleted": 1}
    accounts = client.get("/api/accounts", headers=auth(1)).json()
    assert accounts[0]["balance_cents"] == 100_000
    assert accounts[0]["transaction_count"] == 0


def test_error_mapping(client):
    account = client.post(
        "/api/accounts", json={"name": "Main"}, headers=auth(1)
    ).json()

    assert client.get(f"/api/accounts/{account['id']}", headers=auth(2)).status_code == 404
    resp = client.post(
        "/api/transactions",
        json={
            "account_id": account["id"],
            "type": "INCOME",
            "amount_cents": 0,
            "date": "2024-03-01",
            "category": "salary",
        },
        headers=auth(1),
    )
    assert resp.status_code == 400
    assert client.put("/api/budget", json={"amount_cents": -5}, headers=auth(1)).status_code == 400


def test_budget_endpoints(client):
    account = client.post(
        "/api/accounts", json={"name": "Main"}, headers=auth(1)
    ).json()
    resp = client.get(f"/api/budget?account_id={account['id']}", headers=auth(1))
    assert resp.json() == {"budget": None, "current_expenses_cents": 0}

    resp = client.put("/api/budget", json={"amount_cents": 50_000}, headers=auth(1))
    assert resp.status_code == 200
    assert resp.json()["amount_cents"] == 50_000


def test_receipt_scan(client):
    resp = client.post(
        "/api/receipts/scan",
        files={"file": ("receipt.jpg", b"\xff\xd8data", "image/jpeg")},
        headers=auth(1),
    )
    assert resp.status_code == 200
    assert resp.json()["amount_cents"] == 450

    resp = client.post(
        "/api/receipts/scan",
        files={"file": ("receipt.jpg", b"", "image/jpeg")},
        headers=auth(1),
    )
    assert resp.status_code == 400


def test_unknown_job_is_not_found(client):
    assert client.post("/api/jobs/nope/run", headers=auth(1)).status_code == 404
