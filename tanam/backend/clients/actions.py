"""Remote action webhooks (topup, bot create, prompt update, renewal, QR).

Webhook responses have no fixed contract. ``decode_action_response`` tries
the known shapes in a fixed order and always produces one ``ActionResult``.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from tanam.backend.config import Settings, get_settings

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILURE = "failure"

# Decoded shape / error variant.
KIND_SUCCESS_FLAG = "success_flag"
KIND_PAYMENT_LIST = "payment_list"
KIND_PAYMENT_OBJECT = "payment_object"
KIND_EMPTY = "empty"
KIND_REMOTE_ERROR = "remote_error"
KIND_HTTP_ERROR = "http_error"
KIND_INVALID_JSON = "invalid_json"
KIND_UNRECOGNIZED = "unrecognized"
KIND_TRANSPORT_ERROR = "transport_error"

ACTIONS = ("topup", "bot_create", "prompt_update", "bot_renew")

DEFAULT_FAILURE_MESSAGE = "Action could not be processed. Check your connection and try again."


@dataclass(frozen=True)
class ActionResult:
    outcome: str
    kind: str
    redirect_url: str | None = None
    message: str | None = None
    status_code: int = 0
    data: Any = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.outcome == SUCCESS

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"outcome": self.outcome, "kind": self.kind}
        if self.redirect_url:
            out["redirect_url"] = self.redirect_url
        if self.message:
            out["message"] = self.message
        return out


def _failure(kind: str, message: str, status_code: int, data: Any = None) -> ActionResult:
    return ActionResult(outcome=FAILURE, kind=kind, message=message, status_code=status_code, data=data)


def _str_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def decode_action_response(status_code: int, body: str, *, strict: bool = True) -> ActionResult:
    """Normalize a webhook response.

    Order: HTTP status, JSON parse, ``success`` flag, payment array, payment
    object, ``message``/``error`` object, otherwise ``unrecognized``.
    With ``strict=False`` any 2xx body that matches no payment shape counts
    as success (actions that only acknowledge with a status code).
    """
    text = body or ""
    if not 200 <= status_code < 300:
        message = f"HTTP {status_code}: {text[:200]}" if text.strip() else f"HTTP {status_code}"
        return _failure(KIND_HTTP_ERROR, message, status_code)

    if not text.strip():
        if strict:
            return _failure(KIND_INVALID_JSON, "Empty response from action endpoint", status_code)
        return ActionResult(outcome=SUCCESS, kind=KIND_EMPTY, status_code=status_code)
    try:
        data = json.loads(text)
    except ValueError:
        if strict:
            return _failure(KIND_INVALID_JSON, f"Invalid JSON response: {text[:200]}", status_code)
        return ActionResult(outcome=SUCCESS, kind=KIND_EMPTY, status_code=status_code, data=text)

    if isinstance(data, dict) and data.get("success") is True:
        url = _str_or_none(data.get("payment_url")) or _str_or_none(data.get("invoice_url"))
        return ActionResult(
            outcome=SUCCESS,
            kind=KIND_SUCCESS_FLAG,
            redirect_url=url,
            message=_str_or_none(data.get("message")),
            status_code=status_code,
            data=data,
        )

    if isinstance(data, list) and data:
        first = data[0] if isinstance(data[0], dict) else {}
        return ActionResult(
            outcome=SUCCESS,
            kind=KIND_PAYMENT_LIST,
            redirect_url=_str_or_none(first.get("invoice_url")),
            status_code=status_code,
            data=data,
        )

    if (
        isinstance(data, dict)
        and (data.get("invoice_url") or data.get("id"))
        and data.get("success") is not False
        and not data.get("error")
    ):
        url = _str_or_none(data.get("invoice_url")) or _str_or_none(data.get("payment_url"))
        return ActionResult(
            outcome=SUCCESS,
            kind=KIND_PAYMENT_OBJECT,
            redirect_url=url,
            status_code=status_code,
            data=data,
        )

    if isinstance(data, dict):
        message = _str_or_none(data.get("message")) or _str_or_none(data.get("error"))
        if message:
            return _failure(KIND_REMOTE_ERROR, message, status_code, data)

    if not strict:
        return ActionResult(outcome=SUCCESS, kind=KIND_EMPTY, status_code=status_code, data=data)
    return _failure(KIND_UNRECOGNIZED, DEFAULT_FAILURE_MESSAGE, status_code, data)


@dataclass(frozen=True)
class QrResult:
    qr: str | None = None
    error: str | None = None
    status_code: int = 0

    @property
    def ok(self) -> bool:
        return self.qr is not None


def decode_qr_response(status_code: int, body: str) -> QrResult:
    if status_code >= 500:
        return QrResult(error=f"QR service is temporarily unavailable ({status_code}). Please try again later.", status_code=status_code)
    if status_code == 404:
        return QrResult(error="QR service endpoint not found. Please contact support.", status_code=status_code)
    if not 200 <= status_code < 300:
        return QrResult(error=f"QR service error: {status_code}", status_code=status_code)
    try:
        data = json.loads(body or "")
    except ValueError:
        return QrResult(error="Invalid response format from QR service", status_code=status_code)
    if not isinstance(data, dict):
        return QrResult(error="QR code not available in response", status_code=status_code)
    if _str_or_none(data.get("qr")):
        return QrResult(qr=data["qr"], status_code=status_code)
    if data.get("error"):
        return QrResult(error=f"QR service error: {data['error']}", status_code=status_code)
    logger.warning("qr_response_without_qr keys=%s", sorted(data.keys()))
    return QrResult(error="QR code not available in response", status_code=status_code)


class ActionGatewayClient:
    """Async client for the action webhooks. Never raises to callers."""

    def __init__(self, settings: Settings | None = None):
        s = settings or get_settings()
        self._urls = {
            "topup": s.topup_url,
            "bot_create": s.bot_create_url,
            "prompt_update": s.prompt_update_url,
            "bot_renew": s.bot_renew_url,
        }
        self._qr_url = s.qr_url
        self._timeout = s.action_timeout_seconds
        self._qr_timeout = s.qr_timeout_seconds

    @staticmethod
    def _headers(access_token: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {access_token}",
        }

    async def _post(self, url: str, payload: dict, access_token: str, timeout: float) -> tuple[int, str]:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(url, json=payload, headers=self._headers(access_token))
        return resp.status_code, resp.text

    async def invoke(self, action: str, payload: dict, access_token: str, *, strict: bool = True) -> ActionResult:
        url = self._urls.get(action)
        if not url:
            raise ValueError(f"unknown action: {action}")
        try:
            status_code, body = await self._post(url, payload, access_token, self._timeout)
        except httpx.TimeoutException:
            logger.warning("action_timeout action=%s", action)
            return _failure(KIND_TRANSPORT_ERROR, "Request timeout - action service took too long to respond", 0)
        except httpx.HTTPError as e:
            logger.warning("action_transport_error action=%s error=%s", action, str(e)[:200])
            return _failure(KIND_TRANSPORT_ERROR, f"Unable to reach action service: {str(e)[:200]}", 0)
        result = decode_action_response(status_code, body, strict=strict)
        log = logger.info if result.ok else logger.warning
        log(
            "action_result action=%s status=%s outcome=%s kind=%s redirect=%s",
            action, status_code, result.outcome, result.kind, bool(result.redirect_url),
        )
        return result

    async def fetch_qr(self, chatbot_id: str, access_token: str) -> QrResult:
        try:
            status_code, body = await self._post(self._qr_url, {"id": chatbot_id}, access_token, self._qr_timeout)
        except httpx.TimeoutException:
            return QrResult(error="Request timeout - QR service took too long to respond")
        except httpx.HTTPError as e:
            logger.warning("qr_transport_error error=%s", str(e)[:200])
            return QrResult(error="Unable to connect to QR service. Please try again later.")
        return decode_qr_response(status_code, body)

    async def proxy(self, body: bytes, access_token: str | None) -> tuple[int, bytes, str]:
        """Raw pass-through to the QR webhook for the /api/qr rewrite."""
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        async with httpx.AsyncClient(timeout=self._qr_timeout) as client:
            resp = await client.post(self._qr_url, content=body, headers=headers)
        return resp.status_code, resp.content, resp.headers.get("content-type", "application/json")


_client: ActionGatewayClient | None = None


def get_action_client() -> ActionGatewayClient:
    global _client
    if _client is None:
        _client = ActionGatewayClient()
    return _client
