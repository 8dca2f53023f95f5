"""Unified API error envelope."""
from __future__ import annotations

from fastapi.responses import JSONResponse
from starlette.requests import Request

from tanam.backend.clients.actions import ActionResult
from tanam.backend.middleware.trace_id import request_trace_id


def error_envelope(
    *,
    code: str,
    message: str,
    trace_id: str,
    detail: str | None = None,
    legacy_error: bool = True,
) -> dict:
    out = {
        "code": code,
        "message": message,
        "trace_id": trace_id,
    }
    if detail:
        out["detail"] = detail
    # dashboard pages read `error`
    if legacy_error:
        out["error"] = code
    return out


def error_response(request: Request, code: str, message: str, status_code: int, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        error_envelope(code=code, message=message, trace_id=request_trace_id(request), detail=detail),
        status_code=status_code,
    )


def action_failure_response(request: Request, result: ActionResult) -> JSONResponse:
    """502 for a failed remote action; carries the normalized failure kind."""
    payload = error_envelope(
        code=result.kind,
        message=result.message or "Action failed",
        trace_id=request_trace_id(request),
    )
    payload["outcome"] = result.outcome
    if result.status_code:
        payload["upstream_status"] = result.status_code
    return JSONResponse(payload, status_code=502)


def insufficient_balance_response(request: Request) -> JSONResponse:
    return error_response(
        request,
        "insufficient_balance",
        "Balance is not enough for this plan. Top up first.",
        402,
    )
