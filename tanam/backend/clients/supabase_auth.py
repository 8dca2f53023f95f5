"""Identity service (Supabase Auth) REST client."""
from __future__ import annotations

import httpx

from tanam.backend.config import get_settings


def _auth_url(path: str) -> str:
    return f"{get_settings().supabase_url.rstrip('/')}/auth/v1/{path}"


def _headers(access_token: str | None = None) -> dict[str, str]:
    s = get_settings()
    headers = {"apikey": s.supabase_anon_key, "Content-Type": "application/json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers


def _error_text(r: httpx.Response) -> str:
    try:
        data = r.json()
    except ValueError:
        return f"http_{r.status_code}"
    if isinstance(data, dict):
        return str(data.get("msg") or data.get("error_description") or data.get("message") or data.get("error") or f"http_{r.status_code}")[:200]
    return f"http_{r.status_code}"


def send_email_otp(email: str, create_user: bool = True) -> tuple[bool, str | None]:
    payload = {"email": email, "create_user": create_user}
    try:
        r = httpx.post(_auth_url("otp"), json=payload, headers=_headers(), timeout=15)
        if r.status_code >= 400:
            return False, _error_text(r)
        return True, None
    except Exception as e:
        return False, str(e)[:200]


def verify_email_otp(email: str, token: str) -> tuple[dict | None, str | None]:
    """Returns the session payload (access_token, refresh_token, user) on success."""
    payload = {"email": email, "token": token, "type": "email"}
    try:
        r = httpx.post(_auth_url("verify"), json=payload, headers=_headers(), timeout=15)
        if r.status_code >= 400:
            return None, _error_text(r)
        data = r.json()
        if not isinstance(data, dict) or not data.get("access_token"):
            return None, "no_session"
        return data, None
    except Exception as e:
        return None, str(e)[:200]


def sign_out(access_token: str) -> tuple[bool, str | None]:
    try:
        r = httpx.post(_auth_url("logout"), headers=_headers(access_token), timeout=15)
        if r.status_code >= 400:
            return False, _error_text(r)
        return True, None
    except Exception as e:
        return False, str(e)[:200]
