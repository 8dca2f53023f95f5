"""Chatbot list, detail, creation, prompt, renewal and WhatsApp QR linking."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tanam.backend.auth import CurrentUser, get_current_user
from tanam.backend.clients.actions import ActionGatewayClient, get_action_client
from tanam.backend.config import get_settings
from tanam.backend.deps import get_db, get_db_factory
from tanam.backend.models.chatbot import STATUS_WORKING
from tanam.backend.services.chatbots import (
    DuplicateChatbotName,
    delete_chatbot,
    ensure_unique_name,
    get_chatbot,
    list_chatbots,
    matches_query,
    read_usage,
    serialize_chatbot,
    update_prompt_local,
)
from tanam.backend.services.compensation import compensate_bot_creation_charge
from tanam.backend.services.ledger import current_balance
from tanam.backend.services.plans import get_plan, is_balance_sufficient
from tanam.backend.services.renewal import RenewalState
from tanam.backend.services.renewal_flow import renew_chatbot
from tanam.backend.utils.api_errors import action_failure_response, error_response, insufficient_balance_response

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateChatbotBody(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    plan_id: str


class PromptBody(BaseModel):
    prompt: str


def _not_found(request: Request):
    return error_response(request, "chatbot_not_found", "Chatbot not found", 404)


@router.get("")
def get_chatbots(
    q: str | None = Query(None),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        bots = list_chatbots(db, user.id)
    except SQLAlchemyError:
        logger.warning("chatbots_read_failed user_id=%s", user.id, exc_info=True)
        return {"chatbots": []}
    return {"chatbots": [serialize_chatbot(b) for b in bots if matches_query(b, q)]}


@router.post("", status_code=201)
async def create_chatbot(
    body: CreateChatbotBody,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: ActionGatewayClient = Depends(get_action_client),
):
    name = body.name.strip()
    if not name:
        return error_response(request, "invalid_name", "Bot name is required", 422)
    try:
        ensure_unique_name(db, user.id, name)
    except DuplicateChatbotName as e:
        return error_response(request, "duplicate_name", str(e), 409)

    plan = get_plan(db, body.plan_id)
    if plan is None:
        return error_response(request, "plan_not_found", "Plan not found", 404)

    prev_balance = current_balance(db, user.id)
    if not is_balance_sufficient(prev_balance, plan):
        return insufficient_balance_response(request)

    result = await client.invoke(
        "bot_create",
        {"name": name, "plan_id": plan.id},
        user.access_token,
        strict=False,
    )
    if not result.ok:
        return action_failure_response(request, result)
    logger.info("chatbot_created user_id=%s plan_id=%s", user.id, plan.id)

    s = get_settings()
    compensation = compensate_bot_creation_charge(
        db,
        user_id=user.id,
        bot_name=name,
        plan_name=plan.name,
        price=plan.price_per_month,
        prev_balance=prev_balance,
        bucket_seconds=s.compensation_bucket_seconds,
    )
    out = result.to_dict()
    out["compensation"] = compensation
    return out


@router.get("/{chatbot_id}")
def get_one(
    chatbot_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    bot = get_chatbot(db, user.id, chatbot_id)
    if bot is None:
        return _not_found(request)
    return serialize_chatbot(bot)


@router.delete("/{chatbot_id}")
def delete_one(
    chatbot_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not delete_chatbot(db, user.id, chatbot_id):
        return _not_found(request)
    logger.info("chatbot_deleted user_id=%s chatbot_id=%s", user.id, chatbot_id)
    return {"status": "deleted", "id": chatbot_id}


@router.get("/{chatbot_id}/usage")
def get_usage(
    chatbot_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    usage = read_usage(db, user.id, chatbot_id)
    if usage is None:
        return _not_found(request)
    return usage


@router.put("/{chatbot_id}/prompt")
async def update_prompt(
    chatbot_id: str,
    body: PromptBody,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: ActionGatewayClient = Depends(get_action_client),
):
    if get_chatbot(db, user.id, chatbot_id) is None:
        return _not_found(request)
    result = await client.invoke(
        "prompt_update",
        {"id": chatbot_id, "prompt": body.prompt, "user_id": user.id},
        user.access_token,
        strict=False,
    )
    if not result.ok:
        return action_failure_response(request, result)
    updated = update_prompt_local(db, user.id, chatbot_id, body.prompt)
    if not updated:
        logger.warning("prompt_local_update_missed chatbot_id=%s", chatbot_id)
    return {"outcome": result.outcome, "prompt": body.prompt, "updated_locally": updated}


@router.post("/{chatbot_id}/renew")
async def renew(
    chatbot_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    factory: sessionmaker = Depends(get_db_factory),
    client: ActionGatewayClient = Depends(get_action_client),
):
    bot = get_chatbot(db, user.id, chatbot_id)
    if bot is None:
        return _not_found(request)
    if not is_balance_sufficient(current_balance(db, user.id), bot.plan):
        return insufficient_balance_response(request)

    outcome = await renew_chatbot(factory, client, user, bot, {"id": chatbot_id})
    if outcome.state == RenewalState.FAILED:
        return error_response(
            request,
            "renewal_failed",
            outcome.message or "Renewal failed",
            502,
        )
    return outcome.to_dict()


@router.post("/{chatbot_id}/qr")
async def link_qr(
    chatbot_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: ActionGatewayClient = Depends(get_action_client),
):
    bot = get_chatbot(db, user.id, chatbot_id)
    if bot is None:
        return _not_found(request)
    if bot.status == STATUS_WORKING:
        return {"linked": True, "status": bot.status, "qr": None}
    qr = await client.fetch_qr(chatbot_id, user.access_token)
    if not qr.ok:
        return error_response(request, "qr_unavailable", qr.error or "QR code not available", 502)
    return {"linked": False, "status": bot.status, "qr": qr.qr}
