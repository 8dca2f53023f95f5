"""Plan catalog and purchase routes."""
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from tanam.backend.auth import create_access_token
from tanam.backend.clients.actions import (
    FAILURE,
    KIND_EMPTY,
    KIND_HTTP_ERROR,
    SUCCESS,
    ActionResult,
    get_action_client,
)
from tanam.backend.config import get_settings
from tanam.backend.database import Base, get_test_engine
from tanam.backend.deps import get_db, get_db_factory
from tanam.backend.main import app
from tanam.backend.models import Balance, Chatbot, Plan, Transaction

USER = "88888888-8888-8888-8888-888888888888"

client = TestClient(app)


class FakeActions:
    def __init__(self):
        self.calls = []
        self.result = ActionResult(outcome=SUCCESS, kind=KIND_EMPTY, status_code=200)

    async def invoke(self, action, payload, access_token, *, strict=True):
        self.calls.append((action, payload, strict))
        return self.result


@pytest.fixture
def engine():
    eng = get_test_engine()
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture
def test_db_session(engine):
    db = sessionmaker(bind=engine)()
    db.add_all([
        Plan(id="plan-pro", name="Pro", price_per_month=150000, ai_quota=1000),
        Plan(id="plan-basic", name="Basic", price_per_month=50000, ai_quota=100),
        Chatbot(id="bot-1", user_id=USER, name="Sales", plan_id="plan-basic",
                ai_quota=100, expired_at=datetime(2026, 3, 10)),
    ])
    db.commit()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def actions(engine, test_db_session, monkeypatch):
    fake = FakeActions()
    s = get_settings()
    monkeypatch.setattr(s, "renewal_poll_attempts", 2)
    monkeypatch.setattr(s, "renewal_poll_interval_seconds", 0.0)

    def _get_db():
        yield test_db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_db_factory] = lambda: sessionmaker(bind=engine)
    app.dependency_overrides[get_action_client] = lambda: fake
    try:
        yield fake
    finally:
        app.dependency_overrides.clear()


def _auth():
    return {"Authorization": f"Bearer {create_access_token({'sub': USER})}"}


@pytest.mark.timeout(10)
def test_plans_ordered_by_price(actions):
    r = client.get("/api/plans", headers=_auth())
    assert r.status_code == 200
    assert [p["id"] for p in r.json()["plans"]] == ["plan-basic", "plan-pro"]


@pytest.mark.timeout(10)
def test_purchase_requires_balance(actions, test_db_session):
    test_db_session.add(Balance(user_id=USER, balance=100000))
    test_db_session.commit()
    r = client.post("/api/plans/plan-pro/purchase", json={"chatbot_id": "bot-1"}, headers=_auth())
    assert r.status_code == 402
    assert r.json()["code"] == "insufficient_balance"
    assert actions.calls == []


@pytest.mark.timeout(10)
def test_purchase_renews_onto_plan(actions, test_db_session):
    test_db_session.add(Balance(user_id=USER, balance=200000))
    test_db_session.commit()
    r = client.post("/api/plans/plan-pro/purchase", json={"chatbot_id": "bot-1"}, headers=_auth())
    assert r.status_code == 200
    data = r.json()
    assert data["plan"]["name"] == "Pro"
    assert data["state"] == "timed_out"
    assert data["attempts"] == 2
    assert data["pending_confirmation"] is True
    assert data["ai_quota"] == 110
    assert actions.calls == [("bot_renew", {"id": "bot-1", "planId": "plan-pro"}, False)]

    test_db_session.expire_all()
    bot = test_db_session.get(Chatbot, "bot-1")
    assert bot.ai_quota == 110
    assert bot.expired_at > datetime(2026, 3, 10)


@pytest.mark.timeout(10)
def test_purchase_reconciles_missing_balance(actions, test_db_session):
    test_db_session.add(Transaction(user_id=USER, type="topup", amount=500000))
    test_db_session.commit()
    r = client.post("/api/plans/plan-pro/purchase", json={"chatbot_id": "bot-1"}, headers=_auth())
    assert r.status_code == 200
    assert actions.calls[0][0] == "bot_renew"
    stored = test_db_session.execute(select(Balance.balance).where(Balance.user_id == USER)).scalar_one()
    assert stored == 500000


@pytest.mark.timeout(10)
def test_purchase_action_failure_is_502(actions, test_db_session):
    test_db_session.add(Balance(user_id=USER, balance=200000))
    test_db_session.commit()
    actions.result = ActionResult(outcome=FAILURE, kind=KIND_HTTP_ERROR, message="HTTP 500", status_code=500)
    r = client.post("/api/plans/plan-pro/purchase", json={"chatbot_id": "bot-1"}, headers=_auth())
    assert r.status_code == 502
    assert r.json()["code"] == "purchase_failed"

    test_db_session.expire_all()
    assert test_db_session.get(Chatbot, "bot-1").ai_quota == 100


@pytest.mark.timeout(10)
def test_purchase_unknown_plan(actions):
    r = client.post("/api/plans/nope/purchase", json={"chatbot_id": "bot-1"}, headers=_auth())
    assert r.status_code == 404
    assert r.json()["code"] == "plan_not_found"
