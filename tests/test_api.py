from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db

HEADERS = {"X-User-Id": "alice"}


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_requests_without_user_are_rejected(client) -> None:
    assert client.get("/balance").status_code == 401
    assert client.post("/records", json={"amount": "5"}).status_code == 401


def test_record_and_read_balance(client) -> None:
    created = client.post(
        "/records", json={"amount": "100", "kind": "credit"}, headers=HEADERS
    )
    assert created.status_code == 201
    body = created.json()
    assert Decimal(body["balance_after"]) == Decimal("100")
    assert body["category"] == "Uncategorized"

    spent = client.post(
        "/records",
        json={"amount": "40", "kind": "debit", "category": "expense"},
        headers=HEADERS,
    )
    assert spent.status_code == 201
    assert Decimal(spent.json()["balance_after"]) == Decimal("60")

    balance = client.get("/balance", headers=HEADERS).json()
    assert set(balance) == {"balance", "savings", "monthData"}
    assert Decimal(balance["balance"]) == Decimal("60")
    assert Decimal(balance["monthData"]["expenses"]) == Decimal("40")

    records = client.get("/records", headers=HEADERS).json()
    assert [r["id"] for r in records] == [body["id"], spent.json()["id"]]

    export = client.get("/records/export", headers=HEADERS)
    assert export.status_code == 200
    assert export.text.splitlines()[0].startswith("Date,Category,Description")
    assert len(export.text.splitlines()) == 3

    report = client.post("/ledger/verify", headers=HEADERS).json()
    assert report["consistent"] is True


def test_users_are_isolated(client) -> None:
    client.post("/records", json={"amount": "10", "kind": "credit"}, headers=HEADERS)
    other = client.get("/balance", headers={"X-User-Id": "bob"}).json()
    assert Decimal(other["balance"]) == 0


def test_validation_errors_map_to_400(client) -> None:
    bad_amount = client.post(
        "/records", json={"amount": "0", "kind": "credit"}, headers=HEADERS
    )
    assert bad_amount.status_code == 400
    assert bad_amount.json()["error"] == "InvalidAmount"

    too_large = client.post(
        "/records", json={"amount": "1e20", "kind": "credit"}, headers=HEADERS
    )
    assert too_large.status_code == 400
    assert too_large.json()["error"] == "InvalidAmount"

    bad_kind = client.post(
        "/records", json={"amount": "5", "kind": "gift"}, headers=HEADERS
    )
    assert bad_kind.status_code == 400
    assert bad_kind.json()["error"] == "InvalidKind"

    assert client.get("/records?period=someday", headers=HEADERS).status_code == 400


def test_fund_lifecycle(client) -> None:
    fund = {
        "fund_name": "Alpha Fund",
        "category": "Equity",
        "contribution_amount": "1000",
        "scheme_code": "ALPHA-123",
    }
    created = client.post("/funds", json=fund, headers=HEADERS)
    assert created.status_code == 201
    assert created.json()["nav_day"] == "10"

    duplicate = client.post("/funds", json=fund, headers=HEADERS)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "DuplicateFund"

    sip = client.post(
        "/sip", json={"fund_name": "alpha fund", "nav": "20"}, headers=HEADERS
    )
    assert sip.status_code == 200
    body = sip.json()
    assert body["scheme_code"] == "ALPHA-123"
    assert Decimal(body["units_purchased"]) == Decimal("50")
    assert body["record"]["id"].endswith("-EXP")
    assert body["record"]["category"] == "Investment"

    again = client.post(
        "/sip", json={"scheme_code": "ALPHA-123", "nav": "21"}, headers=HEADERS
    )
    assert again.status_code == 409

    holdings = client.get("/funds", headers=HEADERS).json()
    assert Decimal(holdings[0]["current_value"]) == Decimal("1000")

    log = client.get("/sip", headers=HEADERS).json()
    assert len(log) == 1
    assert log[0]["fund_name"] == "Alpha Fund"

    tsv = client.get("/sip/export", headers=HEADERS)
    assert tsv.text.splitlines()[0].split("\t")[:3] == ["Date", "Fund Name", "Scheme Code"]

    corrected = client.put(
        "/funds/ALPHA-123/schedule/2030", json={"amount": "1500"}, headers=HEADERS
    )
    assert corrected.status_code == 200
    assert Decimal(corrected.json()["schedule"]["2030"]) == Decimal("1500")


def test_unknown_fund_is_404(client) -> None:
    missing = client.post(
        "/sip", json={"scheme_code": "NOPE-000", "nav": "20"}, headers=HEADERS
    )
    assert missing.status_code == 404
    assert missing.json()["error"] == "FundNotFound"
    assert client.get("/funds/NOPE-000", headers=HEADERS).status_code == 404
    no_target = client.post("/sip", json={"nav": "20"}, headers=HEADERS)
    assert no_target.status_code == 400


def test_legacy_import_endpoint(client) -> None:
    payload = {
        "info": {
            "NIFTYI-482": {
                "fund_name": "Nifty Index",
                "scheme_category": "Index",
                "amount": {"2025": {"amount": 500}},
            }
        }
    }
    first = client.post("/funds/import", json=payload, headers=HEADERS).json()
    assert first["imported"] == ["NIFTYI-482"]
    second = client.post("/funds/import", json=payload, headers=HEADERS).json()
    assert second["skipped"] == ["NIFTYI-482"]
    bad = client.post("/funds/import", json={"info": []}, headers=HEADERS)
    assert bad.status_code == 400


def test_legacy_import_repeated_code_is_409(client) -> None:
    payload = {
        "info": {
            "a": {"scheme_code": "SAME-1", "fund_name": "A", "scheme_category": "E"},
            "b": {"scheme_code": "SAME-1", "fund_name": "B", "scheme_category": "E"},
        }
    }
    response = client.post("/funds/import", json=payload, headers=HEADERS)
    assert response.status_code == 409
