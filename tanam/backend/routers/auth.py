"""E-mail OTP login against the identity service."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tanam.backend.auth import CurrentUser, get_current_user
from tanam.backend.clients import supabase_auth
from tanam.backend.config import get_settings, is_identity_configured
from tanam.backend.deps import get_db
from tanam.backend.services.ledger import ensure_balance_record
from tanam.backend.utils.api_errors import error_response

logger = logging.getLogger(__name__)

router = APIRouter()


class OtpBody(BaseModel):
    email: EmailStr


class VerifyBody(BaseModel):
    email: EmailStr
    token: str


def _identity_unavailable(request: Request):
    return error_response(
        request,
        "identity_not_configured",
        "Login is unavailable: SUPABASE_URL / SUPABASE_ANON_KEY are not set.",
        503,
    )


@router.post("/otp")
def request_otp(body: OtpBody, request: Request):
    if not is_identity_configured(get_settings()):
        return _identity_unavailable(request)
    ok, err = supabase_auth.send_email_otp(body.email)
    if not ok:
        logger.warning("otp_request_failed error=%s", err)
        return error_response(request, "otp_failed", err or "Could not send the login code", 400)
    return {"status": "sent", "email": body.email}


@router.post("/verify")
def verify_otp(body: VerifyBody, request: Request, db: Session = Depends(get_db)):
    if not is_identity_configured(get_settings()):
        return _identity_unavailable(request)
    session, err = supabase_auth.verify_email_otp(body.email, body.token.strip())
    if session is None:
        return error_response(request, "otp_invalid", err or "Invalid or expired code", 401)

    user = session.get("user") or {}
    user_id = user.get("id")
    balance_created = False
    if user_id:
        try:
            balance_created = ensure_balance_record(db, str(user_id))
        except SQLAlchemyError:
            db.rollback()
            logger.exception("balance_init_failed user_id=%s", user_id)
    if balance_created:
        logger.info("balance_initialized user_id=%s", user_id)
    return {
        "access_token": session.get("access_token"),
        "refresh_token": session.get("refresh_token"),
        "expires_in": session.get("expires_in"),
        "user": {"id": user_id, "email": user.get("email") or body.email},
    }


@router.post("/logout")
def logout(user: CurrentUser = Depends(get_current_user)):
    ok, err = supabase_auth.sign_out(user.access_token)
    if not ok:
        # local session is dropped by the client either way
        logger.warning("logout_failed user_id=%s error=%s", user.id, err)
    return {"status": "ok"}
