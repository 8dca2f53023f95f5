"""Dashboard snapshot loading, generation fencing and the refresh poller."""
import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from tanam.backend.database import Base, get_test_engine
from tanam.backend.models import Balance, Chatbot, Plan, Transaction
from tanam.backend.services.dashboard_state import (
    DashboardSnapshot,
    DashboardState,
    RefreshPoller,
    load_snapshot,
    load_snapshot_sync,
    paginate,
)

USER = "11111111-1111-1111-1111-111111111111"


@pytest.fixture
def session_factory():
    engine = get_test_engine()
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


@pytest.fixture
def seeded(session_factory):
    base = datetime(2026, 1, 1)
    with session_factory() as db:
        plan = Plan(id="plan-basic", name="Basic", price_per_month=50000, ai_quota=100)
        db.add(plan)
        for i in range(7):
            db.add(Transaction(
                user_id=USER,
                type="topup" if i % 2 == 0 else "usage",
                amount=1000,
                description=f"tx {i}",
                created_at=base + timedelta(hours=i),
            ))
        db.add(Chatbot(id="bot-1", user_id=USER, name="Sales", status="WORKING", plan_id="plan-basic",
                       ai_usages=25, ai_quota=100, expired_at=datetime.utcnow() + timedelta(days=3)))
        db.commit()
    return session_factory


async def _inline(fn, *args):
    return fn(*args)


@pytest.mark.timeout(5)
def test_paginate_clamps_and_counts():
    items = list(range(12))
    assert paginate(items, 1, 5) == ([0, 1, 2, 3, 4], 3)
    assert paginate(items, 3, 5) == ([10, 11], 3)
    assert paginate(items, 0, 5)[0] == [0, 1, 2, 3, 4]
    assert paginate([], 1, 5) == ([], 0)


@pytest.mark.timeout(10)
def test_sync_snapshot_reconciles_missing_balance(seeded):
    with seeded() as db:
        snap = load_snapshot_sync(db, USER, generation=1)
    # 4 topups, 3 usages of 1000
    assert snap.balance == 1000
    assert snap.errors == ()
    with seeded() as db:
        stored = db.execute(select(Balance.balance).where(Balance.user_id == USER)).scalar_one()
    assert stored == 1000

    data = snap.to_dict(tx_page=2, pay_page=1, page_size=5)
    assert data["transactions"]["total"] == 7
    assert data["transactions"]["total_pages"] == 2
    assert len(data["transactions"]["items"]) == 2
    # newest first
    assert data["transactions"]["items"][-1]["description"] == "tx 0"
    assert data["chatbots"][0]["usage_percent"] == 25
    assert data["chatbots"][0]["plan"]["name"] == "Basic"


@pytest.mark.timeout(10)
def test_sync_snapshot_keeps_stored_balance(seeded):
    with seeded() as db:
        db.add(Balance(user_id=USER, balance=999))
        db.commit()
        snap = load_snapshot_sync(db, USER)
    assert snap.balance == 999


@pytest.mark.asyncio
async def test_async_snapshot_waits_for_all_reads(seeded):
    snap = await load_snapshot(seeded, USER, generation=4, to_thread=_inline)
    assert snap.generation == 4
    assert snap.balance == 1000
    assert len(snap.transactions) == 7
    assert len(snap.chatbots) == 1


@pytest.mark.asyncio
async def test_async_snapshot_tolerates_failed_read(seeded):
    calls = {"n": 0}

    async def flaky(fn, *args):
        calls["n"] += 1
        if calls["n"] == 3:
            raise RuntimeError("payments unavailable")
        return fn(*args)

    snap = await load_snapshot(seeded, USER, generation=1, to_thread=flaky)
    assert snap.errors == ("payments",)
    assert snap.payments == ()
    assert snap.balance == 1000


@pytest.mark.timeout(5)
def test_state_discards_superseded_generation():
    state = DashboardState()
    assert state.apply(DashboardSnapshot(generation=2, balance=200))
    assert not state.apply(DashboardSnapshot(generation=1, balance=100))
    assert state.snapshot.balance == 200
    assert state.discarded == 1


@pytest.mark.asyncio
async def test_overlapping_cycles_keep_newest():
    slow_gate = asyncio.Event()

    async def load(generation):
        if generation == 1:
            await slow_gate.wait()
        return DashboardSnapshot(generation=generation, balance=generation * 100)

    state = DashboardState()
    poller = RefreshPoller(state, load)
    slow = asyncio.create_task(poller.refresh_once())
    await asyncio.sleep(0)
    assert await poller.refresh_once() is True
    slow_gate.set()
    assert await slow is False
    assert state.snapshot.generation == 2
    assert state.snapshot.balance == 200
    assert state.discarded == 1


@pytest.mark.asyncio
async def test_failed_cycle_leaves_state_untouched():
    async def load(generation):
        raise RuntimeError("boom")

    state = DashboardState()
    assert await RefreshPoller(state, load).refresh_once() is False
    assert state.snapshot is None


@pytest.mark.asyncio
async def test_poller_start_and_stop():
    seen = []
    enough = asyncio.Event()

    async def load(generation):
        return DashboardSnapshot(generation=generation, balance=0)

    async def on_update(snapshot):
        seen.append(snapshot.generation)
        if len(seen) >= 2:
            enough.set()

    poller = RefreshPoller(DashboardState(), load, interval=0.01, on_update=on_update)
    poller.start()
    assert poller.running
    await asyncio.wait_for(enough.wait(), timeout=2)
    await poller.stop()
    assert not poller.running
    count = len(seen)
    await asyncio.sleep(0.05)
    assert len(seen) == count
    assert seen == sorted(seen)
