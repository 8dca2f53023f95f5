"""Plan catalog."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from tanam.backend.models.chatbot import Plan


def list_plans(db: Session) -> list[Plan]:
    return list(db.execute(select(Plan).order_by(Plan.price_per_month.asc())).scalars().all())


def get_plan(db: Session, plan_id: str) -> Plan | None:
    return db.get(Plan, plan_id)


def is_balance_sufficient(balance: int | None, plan: Plan | None) -> bool:
    if plan is None or balance is None:
        return False
    return balance >= plan.price_per_month


def serialize_plan(plan: Plan) -> dict:
    return {
        "id": plan.id,
        "name": plan.name,
        "price_per_month": plan.price_per_month,
        "ai_quota": plan.ai_quota,
        "description": plan.description,
    }
