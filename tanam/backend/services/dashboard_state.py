"""Dashboard view state: snapshot loading, pagination and timed refresh.

One refresh cycle issues all reads, waits for every one of them, and only
then produces a ``DashboardSnapshot``; ``DashboardState.apply`` swaps the
whole snapshot in a single assignment. Cycles are numbered, and a cycle that
finishes after a newer one was applied is discarded.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tanam.backend.services.chatbots import list_chatbots, serialize_chatbot
from tanam.backend.services.ledger import (
    BalanceRead,
    LedgerReadError,
    list_payments,
    list_transactions,
    persist_balance,
    read_balance,
    reconcile,
)

logger = logging.getLogger(__name__)

PAGE_SIZE = 5


def paginate(items: Sequence[Any], page: int, page_size: int = PAGE_SIZE) -> tuple[list[Any], int]:
    """Return ``(items on page, total pages)``; pages are 1-based and clamp at 1."""
    page_size = max(1, page_size)
    page = max(1, page)
    start = (page - 1) * page_size
    return list(items[start:start + page_size]), math.ceil(len(items) / page_size)


def serialize_transaction(tx) -> dict:
    return {
        "id": tx.id,
        "type": tx.type,
        "amount": tx.amount,
        "description": tx.description,
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
    }


def serialize_payment(p) -> dict:
    return {
        "id": p.id,
        "amount": p.amount,
        "status": p.status,
        "invoice_url": p.invoice_url,
        "external_id": p.external_id,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


@dataclass(frozen=True)
class DashboardSnapshot:
    generation: int
    balance: Optional[int]
    transactions: tuple = ()
    payments: tuple = ()
    chatbots: tuple = ()
    refreshed_at: datetime = field(default_factory=datetime.utcnow)
    errors: tuple = ()

    def to_dict(self, tx_page: int = 1, pay_page: int = 1, page_size: int = PAGE_SIZE) -> dict:
        tx_items, tx_pages = paginate(self.transactions, tx_page, page_size)
        pay_items, pay_pages = paginate(self.payments, pay_page, page_size)
        return {
            "generation": self.generation,
            "balance": self.balance,
            "transactions": {"items": tx_items, "page": max(1, tx_page), "total_pages": tx_pages, "total": len(self.transactions)},
            "payments": {"items": pay_items, "page": max(1, pay_page), "total_pages": pay_pages, "total": len(self.payments)},
            "chatbots": list(self.chatbots),
            "refreshed_at": self.refreshed_at.isoformat(),
            "errors": list(self.errors),
        }


def _settle_balance(
    read: BalanceRead | None,
    transactions: list | None,
    persist: Callable[[int], None],
) -> Optional[int]:
    if read is None:
        return None
    if read.had_record:
        return read.balance
    if transactions is None:
        return None
    computed = reconcile(transactions)
    try:
        persist(computed)
    except Exception:
        logger.exception("balance_upsert_failed")
    return computed


def load_snapshot_sync(db: Session, user_id: str, generation: int = 0) -> DashboardSnapshot:
    """Sequential cycle on one session; the balance is settled after every read."""
    errors: list[str] = []
    try:
        read = read_balance(db, user_id)
    except LedgerReadError as e:
        logger.warning("dashboard_read_failed what=%s user_id=%s", e.what, user_id)
        db.rollback()
        read = None
        errors.append("balance")
    try:
        txs = list_transactions(db, user_id)
    except LedgerReadError:
        logger.warning("dashboard_read_failed what=transactions user_id=%s", user_id)
        db.rollback()
        txs = None
        errors.append("transactions")
    try:
        payments = [serialize_payment(p) for p in list_payments(db, user_id)]
    except LedgerReadError:
        logger.warning("dashboard_read_failed what=payments user_id=%s", user_id)
        db.rollback()
        payments = []
        errors.append("payments")
    try:
        bots = [serialize_chatbot(b) for b in list_chatbots(db, user_id)]
    except SQLAlchemyError:
        logger.warning("dashboard_read_failed what=chatbots user_id=%s", user_id, exc_info=True)
        db.rollback()
        bots = []
        errors.append("chatbots")

    balance = _settle_balance(read, txs, lambda value: persist_balance(db, user_id, value))
    return DashboardSnapshot(
        generation=generation,
        balance=balance,
        transactions=tuple(serialize_transaction(t) for t in (txs or [])),
        payments=tuple(payments),
        chatbots=tuple(bots),
        errors=tuple(errors),
    )


async def load_snapshot(
    session_factory: sessionmaker,
    user_id: str,
    generation: int,
    to_thread: Callable[..., Awaitable[Any]] = asyncio.to_thread,
) -> DashboardSnapshot:
    """Concurrent cycle: each read on its own session, settled once all resolve."""

    def _with_session(fn):
        def run():
            with session_factory() as db:
                return fn(db)
        return run

    results = await asyncio.gather(
        to_thread(_with_session(lambda db: read_balance(db, user_id))),
        to_thread(_with_session(lambda db: [serialize_transaction(t) for t in list_transactions(db, user_id)])),
        to_thread(_with_session(lambda db: [serialize_payment(p) for p in list_payments(db, user_id)])),
        to_thread(_with_session(lambda db: [serialize_chatbot(b) for b in list_chatbots(db, user_id)])),
        return_exceptions=True,
    )
    names = ("balance", "transactions", "payments", "chatbots")
    errors = []
    values: list[Any] = []
    for name, res in zip(names, results):
        if isinstance(res, BaseException):
            logger.warning("dashboard_read_failed what=%s user_id=%s error=%s", name, user_id, str(res)[:200])
            errors.append(name)
            values.append(None)
        else:
            values.append(res)
    read, txs, payments, bots = values

    def _persist(value: int) -> None:
        with session_factory() as db:
            persist_balance(db, user_id, value)

    balance = None
    if read is not None and read.had_record:
        balance = read.balance
    elif read is not None and txs is not None:
        balance = reconcile(txs)
        try:
            await to_thread(_persist, balance)
        except Exception:
            logger.exception("balance_upsert_failed user_id=%s", user_id)

    return DashboardSnapshot(
        generation=generation,
        balance=balance,
        transactions=tuple(txs or ()),
        payments=tuple(payments or ()),
        chatbots=tuple(bots or ()),
        errors=tuple(errors),
    )


class DashboardState:
    """Holds the last applied snapshot for one user."""

    def __init__(self) -> None:
        self._snapshot: Optional[DashboardSnapshot] = None
        self._issued = 0
        self._applied = 0
        self.discarded = 0

    @property
    def snapshot(self) -> Optional[DashboardSnapshot]:
        return self._snapshot

    def next_generation(self) -> int:
        self._issued += 1
        return self._issued

    def apply(self, snapshot: DashboardSnapshot) -> bool:
        if snapshot.generation <= self._applied:
            self.discarded += 1
            logger.debug("dashboard_cycle_superseded generation=%s applied=%s", snapshot.generation, self._applied)
            return False
        self._snapshot = snapshot
        self._applied = snapshot.generation
        return True


LoadFn = Callable[[int], Awaitable[DashboardSnapshot]]
UpdateFn = Callable[[DashboardSnapshot], Awaitable[None]]


class RefreshPoller:
    """Timed refresh owning its own task; cycles may overlap, stale ones are dropped."""

    def __init__(
        self,
        state: DashboardState,
        load: LoadFn,
        interval: float = 5.0,
        on_update: Optional[UpdateFn] = None,
    ) -> None:
        self._state = state
        self._load = load
        self._interval = interval
        self._on_update = on_update
        self._task: Optional[asyncio.Task] = None
        self._cycles: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh_once(self) -> bool:
        generation = self._state.next_generation()
        try:
            snapshot = await self._load(generation)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("dashboard_refresh_failed generation=%s", generation)
            return False
        applied = self._state.apply(snapshot)
        if applied and self._on_update is not None:
            await self._on_update(snapshot)
        return applied

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        tasks = list(self._cycles)
        if self._task is not None:
            tasks.append(self._task)
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("dashboard_refresh_task_failed")
        self._cycles.clear()
        self._task = None

    async def _loop(self) -> None:
        try:
            while True:
                cycle = asyncio.create_task(self.refresh_once())
                self._cycles.add(cycle)
                cycle.add_done_callback(self._cycles.discard)
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            logger.debug("dashboard refresh loop cancelled")
            raise
