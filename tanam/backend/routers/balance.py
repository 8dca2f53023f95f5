"""Balance page: stored/reconciled balance, ledger history, top-up."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from tanam.backend.auth import CurrentUser, get_current_user
from tanam.backend.clients.actions import ActionGatewayClient, get_action_client
from tanam.backend.config import get_settings
from tanam.backend.deps import get_db
from tanam.backend.services.dashboard_state import paginate, serialize_payment, serialize_transaction
from tanam.backend.services.ledger import (
    LedgerReadError,
    list_payments,
    list_transactions,
    read_balance,
    resolve_balance,
)
from tanam.backend.utils.api_errors import action_failure_response

logger = logging.getLogger(__name__)

router = APIRouter()


class TopupBody(BaseModel):
    amount: int = Field(gt=0)


def _page(items: list, page: int, page_size: int) -> dict:
    rows, total_pages = paginate(items, page, page_size)
    return {"items": rows, "page": max(1, page), "total_pages": total_pages, "total": len(items)}


@router.get("")
def get_balance(
    tx_page: int = Query(1, ge=1),
    pay_page: int = Query(1, ge=1),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    page_size = get_settings().page_size
    try:
        txs = list_transactions(db, user.id)
    except LedgerReadError:
        logger.warning("balance_page_read_failed what=transactions user_id=%s", user.id, exc_info=True)
        db.rollback()
        txs = None
    try:
        payments = list_payments(db, user.id)
    except LedgerReadError:
        logger.warning("balance_page_read_failed what=payments user_id=%s", user.id, exc_info=True)
        db.rollback()
        payments = []

    balance = None
    try:
        if txs is not None:
            balance = resolve_balance(db, user.id, txs)
        else:
            balance = read_balance(db, user.id).balance
    except LedgerReadError:
        logger.warning("balance_page_read_failed what=balance user_id=%s", user.id, exc_info=True)
        db.rollback()

    return {
        "balance": balance,
        "transactions": _page([serialize_transaction(t) for t in txs or []], tx_page, page_size),
        "payments": _page([serialize_payment(p) for p in payments], pay_page, page_size),
    }


@router.post("/topup")
async def topup(
    body: TopupBody,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    client: ActionGatewayClient = Depends(get_action_client),
):
    payload = {"user_id": user.id, "email": user.email, "amount": body.amount}
    result = await client.invoke("topup", payload, user.access_token, strict=True)
    if not result.ok:
        return action_failure_response(request, result)
    return result.to_dict()
