"""Plan catalog and plan purchase (renewal onto a selected plan)."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tanam.backend.auth import CurrentUser, get_current_user
from tanam.backend.clients.actions import ActionGatewayClient, get_action_client
from tanam.backend.deps import get_db, get_db_factory
from tanam.backend.services.chatbots import get_chatbot
from tanam.backend.services.ledger import current_balance
from tanam.backend.services.plans import get_plan, is_balance_sufficient, list_plans, serialize_plan
from tanam.backend.services.renewal import RenewalState
from tanam.backend.services.renewal_flow import renew_chatbot
from tanam.backend.utils.api_errors import error_response, insufficient_balance_response

logger = logging.getLogger(__name__)

router = APIRouter()


class PurchaseBody(BaseModel):
    chatbot_id: str


@router.get("")
def get_plans(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        plans = list_plans(db)
    except SQLAlchemyError:
        logger.warning("plans_read_failed", exc_info=True)
        return {"plans": []}
    return {"plans": [serialize_plan(p) for p in plans]}


@router.post("/{plan_id}/purchase")
async def purchase_plan(
    plan_id: str,
    body: PurchaseBody,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    factory: sessionmaker = Depends(get_db_factory),
    client: ActionGatewayClient = Depends(get_action_client),
):
    plan = get_plan(db, plan_id)
    if plan is None:
        return error_response(request, "plan_not_found", "Plan not found", 404)
    bot = get_chatbot(db, user.id, body.chatbot_id)
    if bot is None:
        return error_response(request, "chatbot_not_found", "Chatbot not found", 404)
    if not is_balance_sufficient(current_balance(db, user.id), plan):
        return insufficient_balance_response(request)

    outcome = await renew_chatbot(factory, client, user, bot, {"id": bot.id, "planId": plan.id})
    if outcome.state == RenewalState.FAILED:
        return error_response(request, "purchase_failed", outcome.message or "Plan purchase failed", 502)
    logger.info("plan_purchased user_id=%s chatbot_id=%s plan_id=%s", user.id, bot.id, plan.id)
    out = outcome.to_dict()
    out["plan"] = serialize_plan(plan)
    return out
