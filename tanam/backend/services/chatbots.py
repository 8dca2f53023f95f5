"""Chatbot queries and local updates."""
from __future__ import annotations

import math
from datetime import datetime
from typing import Any

from sqlalchemy import select, delete, update
from sqlalchemy.orm import Session

from tanam.backend.models.chatbot import Chatbot
from tanam.backend.services.renewal import RenewalSnapshot


class DuplicateChatbotName(Exception):
    pass


def list_chatbots(db: Session, user_id: str) -> list[Chatbot]:
    return list(
        db.execute(
            select(Chatbot)
            .where(Chatbot.user_id == user_id)
            .order_by(Chatbot.created_at.desc())
        ).unique().scalars().all()
    )


def get_chatbot(db: Session, user_id: str, chatbot_id: str) -> Chatbot | None:
    return db.execute(
        select(Chatbot).where(Chatbot.id == chatbot_id, Chatbot.user_id == user_id)
    ).unique().scalar_one_or_none()


def ensure_unique_name(db: Session, user_id: str, name: str) -> None:
    existing = db.execute(
        select(Chatbot.id)
        .where(Chatbot.user_id == user_id, Chatbot.name == name.strip())
        .limit(1)
    ).first()
    if existing:
        raise DuplicateChatbotName(f'Bot named "{name.strip()}" already exists. Use another name.')


def delete_chatbot(db: Session, user_id: str, chatbot_id: str) -> bool:
    res = db.execute(
        delete(Chatbot).where(Chatbot.id == chatbot_id, Chatbot.user_id == user_id)
    )
    db.commit()
    return res.rowcount > 0


def update_prompt_local(db: Session, user_id: str, chatbot_id: str, prompt: str) -> bool:
    res = db.execute(
        update(Chatbot)
        .where(Chatbot.id == chatbot_id, Chatbot.user_id == user_id)
        .values(prompt=prompt, updated_at=datetime.utcnow())
    )
    db.commit()
    return res.rowcount > 0


def read_usage(db: Session, user_id: str, chatbot_id: str) -> dict | None:
    row = db.execute(
        select(Chatbot.ai_usages, Chatbot.ai_quota)
        .where(Chatbot.id == chatbot_id, Chatbot.user_id == user_id)
    ).first()
    if row is None:
        return None
    return {"ai_usages": row[0], "ai_quota": row[1]}


def read_renewal_snapshot(db: Session, user_id: str, chatbot_id: str) -> RenewalSnapshot | None:
    row = db.execute(
        select(Chatbot.expired_at, Chatbot.ai_quota)
        .where(Chatbot.id == chatbot_id, Chatbot.user_id == user_id)
    ).first()
    if row is None:
        return None
    return RenewalSnapshot(expired_at=row[0], ai_quota=row[1])


def days_left(expired_at: datetime | None, now: datetime | None = None) -> int:
    if not expired_at:
        return 0
    now = now or datetime.utcnow()
    diff_days = math.ceil((expired_at - now).total_seconds() / 86400)
    return max(0, diff_days)


def usage_percent(ai_usages: int | None, ai_quota: int | None) -> int:
    if not ai_quota:
        return 0
    return math.floor((ai_usages or 0) / ai_quota * 100 + 0.5)


def matches_query(bot: Chatbot, q: str | None) -> bool:
    if not q:
        return True
    needle = q.lower()
    return needle in (bot.name or "").lower() or needle in (bot.id or "").lower()


def serialize_chatbot(bot: Chatbot, now: datetime | None = None) -> dict[str, Any]:
    plan = bot.plan
    return {
        "id": bot.id,
        "name": bot.name,
        "is_active": bool(bot.is_active),
        "status": bot.status,
        "plan_id": bot.plan_id,
        "plan": {
            "id": plan.id,
            "name": plan.name,
            "price_per_month": plan.price_per_month,
            "ai_quota": plan.ai_quota,
        } if plan is not None else None,
        "is_auto_renewal": bot.is_auto_renewal,
        "ai_usages": bot.ai_usages,
        "ai_quota": bot.ai_quota,
        "usage_percent": usage_percent(bot.ai_usages, bot.ai_quota),
        "prompt": bot.prompt,
        "created_at": bot.created_at.isoformat() if bot.created_at else None,
        "expired_at": bot.expired_at.isoformat() if bot.expired_at else None,
        "days_left": days_left(bot.expired_at, now),
    }
