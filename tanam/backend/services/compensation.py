"""Client-side compensating writes to the ledger and chatbot rows.

Each compensation is recorded in ``ledger_compensations`` under a
deterministic idempotency key (action + target + time bucket); the unique
constraint turns a retried or concurrent compensation into a no-op.
"""
from __future__ import annotations

import hashlib
import logging
import time
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tanam.backend.models.chatbot import Chatbot
from tanam.backend.models.ledger import LedgerCompensation, Transaction
from tanam.backend.services.ledger import apply_balance_delta, list_transactions, reconcile

logger = logging.getLogger(__name__)

ACTION_BOT_CREATE_CHARGE = "bot_create_charge"
ACTION_RENEWAL_FALLBACK = "renewal_fallback"


def idempotency_key(action: str, target: str, *, now: float | None = None, bucket_seconds: int = 300) -> str:
    bucket = int((time.time() if now is None else now) // max(1, bucket_seconds))
    raw = f"{action}:{target}:{bucket}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _claim(db: Session, key: str, user_id: str, action: str, target_id: str, amount: int | None) -> bool:
    """Insert the compensation marker in the current transaction; False if already claimed."""
    db.add(LedgerCompensation(
        idempotency_key=key,
        user_id=user_id,
        action=action,
        target_id=target_id,
        amount=amount,
    ))
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info("compensation_already_applied action=%s target=%s", action, target_id)
        return False
    return True


def compensate_bot_creation_charge(
    db: Session,
    *,
    user_id: str,
    bot_name: str,
    plan_name: str | None,
    price: int,
    prev_balance: int,
    bucket_seconds: int = 300,
    now: float | None = None,
) -> dict:
    """Fix a bot-creation charge that the webhook recorded with the wrong sign.

    If the ledger-derived balance rose by exactly the plan price after a bot
    was created, the charge is missing; append a ``usage`` transaction and
    debit the stored balance once.
    """
    result = {"applied": False, "computed_balance": None, "reason": None}
    if price <= 0:
        result["reason"] = "free_plan"
        return result
    try:
        computed = reconcile(list_transactions(db, user_id))
    except Exception:
        logger.warning("compensation_ledger_unavailable user_id=%s", user_id, exc_info=True)
        result["reason"] = "ledger_unavailable"
        return result
    result["computed_balance"] = computed
    delta = computed - prev_balance
    if delta != price:
        result["reason"] = "no_discrepancy"
        return result

    logger.info(
        "reconciling_post_create_charge user_id=%s prev=%s now=%s price=%s",
        user_id, prev_balance, computed, price,
    )
    key = idempotency_key(ACTION_BOT_CREATE_CHARGE, f"{user_id}:{bot_name}", now=now, bucket_seconds=bucket_seconds)
    if not _claim(db, key, user_id, ACTION_BOT_CREATE_CHARGE, bot_name, price):
        result["reason"] = "duplicate"
        return result
    try:
        db.add(Transaction(
            user_id=user_id,
            type="usage",
            amount=price,
            description=f"Create Bot {bot_name} - Plan {plan_name or 'Unknown'}",
        ))
        db.flush()
        apply_balance_delta(db, user_id, -price)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("compensation_write_failed user_id=%s", user_id)
        result["reason"] = "write_failed"
        return result
    result["applied"] = True
    result["computed_balance"] = computed - price
    return result


def persist_renewal_fallback(
    db: Session,
    *,
    user_id: str,
    chatbot_id: str,
    expired_at: datetime,
    ai_quota: int,
    bucket_seconds: int = 300,
    now: float | None = None,
) -> bool:
    """Write the expected renewal result once per bucket. True when the row was patched."""
    key = idempotency_key(ACTION_RENEWAL_FALLBACK, chatbot_id, now=now, bucket_seconds=bucket_seconds)
    try:
        if not _claim(db, key, user_id, ACTION_RENEWAL_FALLBACK, chatbot_id, None):
            return False
        res = db.execute(
            update(Chatbot)
            .where(Chatbot.id == chatbot_id, Chatbot.user_id == user_id)
            .values(expired_at=expired_at, ai_quota=ai_quota, updated_at=datetime.utcnow())
        )
        if res.rowcount == 0:
            db.rollback()
            return False
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("renewal_fallback_write_failed chatbot_id=%s", chatbot_id)
        return False
    return True
