"""Ledger reads and balance reconciliation.

The ``balances`` row is a cache of the signed sum of a user's transactions
(topup: +amount, usage: -amount). It is created lazily and may drift when
several flows write it; ``reconcile`` derives the authoritative value from
the transaction log.
"""
from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tanam.backend.models.ledger import Balance, Payment, Transaction

logger = logging.getLogger(__name__)


class LedgerReadError(Exception):
    """Remote storage read failed; callers treat the value as unknown."""

    def __init__(self, what: str, user_id: str, cause: Exception | None = None):
        self.what = what
        self.user_id = user_id
        self.cause = cause
        super().__init__(f"ledger read failed: {what} user_id={user_id}")


@dataclass(frozen=True)
class BalanceRead:
    balance: int | None
    had_record: bool


def read_balance(db: Session, user_id: str) -> BalanceRead:
    try:
        row = db.execute(
            select(Balance.balance).where(Balance.user_id == user_id)
        ).first()
    except SQLAlchemyError as e:
        raise LedgerReadError("balance", user_id, e) from e
    if row is None:
        return BalanceRead(balance=None, had_record=False)
    return BalanceRead(balance=int(row[0] or 0), had_record=True)


def list_transactions(db: Session, user_id: str) -> list[Transaction]:
    try:
        return list(
            db.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(Transaction.created_at.desc())
            ).scalars().all()
        )
    except SQLAlchemyError as e:
        raise LedgerReadError("transactions", user_id, e) from e


def list_payments(db: Session, user_id: str) -> list[Payment]:
    try:
        return list(
            db.execute(
                select(Payment)
                .where(Payment.user_id == user_id)
                .order_by(Payment.created_at.desc())
            ).scalars().all()
        )
    except SQLAlchemyError as e:
        raise LedgerReadError("payments", user_id, e) from e


def _field(tx: Any, name: str) -> Any:
    if isinstance(tx, Mapping):
        return tx.get(name)
    return getattr(tx, name, None)


def _coerce_amount(tx: Any) -> int:
    raw = _field(tx, "amount")
    if isinstance(raw, bool):
        raw = None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning("reconcile malformed amount tx_id=%s amount=%r coerced=0", _field(tx, "id"), raw)
        return 0
    if not math.isfinite(value):
        logger.warning("reconcile malformed amount tx_id=%s amount=%r coerced=0", _field(tx, "id"), raw)
        return 0
    return int(value)


def signed_amount(tx: Any) -> int:
    amount = _coerce_amount(tx)
    return amount if _field(tx, "type") == "topup" else -amount


def reconcile(transactions: Iterable[Any]) -> int:
    """Signed sum of a transaction list. Pure; never raises on bad amounts."""
    return sum(signed_amount(tx) for tx in transactions)


def _upsert_stmt(db: Session, user_id: str, balance: int):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"balance upsert not supported on {dialect}")
    stmt = insert(Balance).values(id=str(uuid.uuid4()), user_id=user_id, balance=balance)
    return stmt.on_conflict_do_update(
        index_elements=[Balance.user_id],
        set_={"balance": stmt.excluded.balance},
    )


def persist_balance(db: Session, user_id: str, balance: int) -> None:
    """Insert-or-replace the balance row keyed by user_id (last write wins)."""
    db.execute(_upsert_stmt(db, user_id, int(balance)))
    db.commit()


def resolve_balance(db: Session, user_id: str, transactions: Iterable[Any]) -> int:
    """Stored balance if present, otherwise reconcile from ``transactions`` and persist once."""
    read = read_balance(db, user_id)
    if read.had_record:
        return read.balance or 0
    computed = reconcile(transactions)
    logger.info("balance_reconciled user_id=%s balance=%s", user_id, computed)
    try:
        persist_balance(db, user_id, computed)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("balance_upsert_failed user_id=%s", user_id)
    return computed


def current_balance(db: Session, user_id: str) -> int | None:
    """``resolve_balance`` for purchase checks; ``None`` when the ledger can't be read."""
    try:
        return resolve_balance(db, user_id, list_transactions(db, user_id))
    except LedgerReadError:
        logger.warning("balance_unavailable user_id=%s", user_id, exc_info=True)
        db.rollback()
        return None


def ensure_balance_record(db: Session, user_id: str) -> bool:
    """Create a zero balance for a new user. Returns True if a row was created."""
    if read_balance(db, user_id).had_record:
        return False
    db.add(Balance(user_id=user_id, balance=0))
    try:
        db.commit()
    except SQLAlchemyError:
        # concurrent first login created it
        db.rollback()
        return False
    return True


def apply_balance_delta(db: Session, user_id: str, delta: int) -> None:
    """Atomic increment of the stored balance; creates the row when missing."""
    result = db.execute(
        update(Balance)
        .where(Balance.user_id == user_id)
        .values(balance=Balance.balance + int(delta))
    )
    if result.rowcount == 0:
        db.add(Balance(user_id=user_id, balance=int(delta)))
    db.commit()
