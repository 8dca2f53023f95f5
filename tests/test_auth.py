"""OTP login routes."""
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from tanam.backend.config import get_settings
from tanam.backend.database import Base, get_test_engine
from tanam.backend.deps import get_db
from tanam.backend.main import app
from tanam.backend.services.ledger import read_balance

USER = "66666666-6666-6666-6666-666666666666"

client = TestClient(app)


@pytest.fixture
def test_db_session():
    engine = get_test_engine()
    Base.metadata.create_all(engine)
    db = sessionmaker(bind=engine)()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def identity_configured(monkeypatch):
    s = get_settings()
    monkeypatch.setattr(s, "supabase_url", "https://project.supabase.co")
    monkeypatch.setattr(s, "supabase_anon_key", "anon-key")
    return s


@pytest.mark.timeout(10)
def test_otp_unavailable_without_identity_config(monkeypatch):
    s = get_settings()
    monkeypatch.setattr(s, "supabase_url", "https://placeholder.supabase.co")
    r = client.post("/api/auth/otp", json={"email": "owner@example.com"})
    assert r.status_code == 503
    assert r.json()["code"] == "identity_not_configured"


@pytest.mark.timeout(10)
def test_otp_sent(identity_configured):
    with patch("tanam.backend.clients.supabase_auth.send_email_otp", return_value=(True, None)) as send:
        r = client.post("/api/auth/otp", json={"email": "owner@example.com"})
    assert r.status_code == 200
    assert r.json()["status"] == "sent"
    send.assert_called_once_with("owner@example.com")


@pytest.mark.timeout(10)
def test_verify_creates_balance_record(identity_configured, test_db_session):
    session = {
        "access_token": "at",
        "refresh_token": "rt",
        "expires_in": 3600,
        "user": {"id": USER, "email": "owner@example.com"},
    }

    def _get_db():
        yield test_db_session

    app.dependency_overrides[get_db] = _get_db
    try:
        with patch("tanam.backend.clients.supabase_auth.verify_email_otp", return_value=(session, None)):
            r = client.post("/api/auth/verify", json={"email": "owner@example.com", "token": " 123456 "})
    finally:
        app.dependency_overrides.pop(get_db, None)

    assert r.status_code == 200
    assert r.json()["access_token"] == "at"
    assert r.json()["user"]["id"] == USER
    read = read_balance(test_db_session, USER)
    assert read.had_record is True
    assert read.balance == 0


@pytest.mark.timeout(10)
def test_verify_rejects_bad_code(identity_configured):
    with patch("tanam.backend.clients.supabase_auth.verify_email_otp", return_value=(None, "Token has expired")):
        r = client.post("/api/auth/verify", json={"email": "owner@example.com", "token": "000000"})
    assert r.status_code == 401
    assert r.json()["message"] == "Token has expired"
