"""Dashboard snapshot and SSE stream routes."""
import json
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from tanam.backend.auth import create_access_token
from tanam.backend.config import get_settings
from tanam.backend.database import Base
from tanam.backend.deps import get_db, get_db_factory
from tanam.backend.main import app
from tanam.backend.models import Chatbot, Plan, Transaction

USER = "77777777-7777-7777-7777-777777777777"

client = TestClient(app)


@pytest.fixture
def factory(tmp_path):
    # file database: stream reads run on worker threads with their own connections
    engine = create_engine(f"sqlite:///{tmp_path / 'dashboard.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    with SessionLocal() as db:
        db.add(Plan(id="plan-pro", name="Pro", price_per_month=150000, ai_quota=1000))
        db.add(Chatbot(id="bot-1", user_id=USER, name="Sales", status="WORKING", plan_id="plan-pro",
                       ai_usages=500, ai_quota=1000, expired_at=datetime.utcnow() + timedelta(days=10)))
        db.add(Transaction(user_id=USER, type="topup", amount=200000))
        db.add(Transaction(user_id=USER, type="usage", amount=150000))
        db.commit()
    yield SessionLocal
    engine.dispose()


@pytest.fixture(autouse=True)
def overrides(factory):
    def _get_db():
        with factory() as db:
            yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_db_factory] = lambda: factory
    try:
        yield
    finally:
        app.dependency_overrides.clear()


def _auth():
    return {"Authorization": f"Bearer {create_access_token({'sub': USER})}"}


@pytest.mark.timeout(10)
def test_dashboard_snapshot():
    r = client.get("/api/dashboard", headers=_auth())
    assert r.status_code == 200
    data = r.json()
    assert data["balance"] == 50000
    assert data["errors"] == []
    assert data["transactions"]["total"] == 2
    bot = data["chatbots"][0]
    assert bot["usage_percent"] == 50
    assert bot["days_left"] in (10, 11)
    assert bot["plan"]["name"] == "Pro"


@pytest.mark.timeout(15)
def test_dashboard_stream_emits_snapshot(monkeypatch):
    monkeypatch.setattr(get_settings(), "dashboard_refresh_seconds", 0.05)
    with client.stream("GET", "/api/dashboard/stream", params={"max_events": 2}, headers=_auth()) as r:
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")
        body = "".join(r.iter_text())

    events = [chunk for chunk in body.split("\n\n") if chunk.startswith("event: snapshot")]
    assert len(events) == 2
    payloads = [json.loads(e.split("data: ", 1)[1]) for e in events]
    assert payloads[0]["balance"] == 50000
    assert payloads[0]["generation"] < payloads[1]["generation"]


@pytest.mark.timeout(10)
def test_stream_requires_auth():
    r = client.get("/api/dashboard/stream")
    assert r.status_code == 401
