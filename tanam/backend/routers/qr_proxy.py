"""``POST /api/qr``: pass-through to the QR webhook (same-origin for the browser)."""
import logging

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from tanam.backend.clients.actions import ActionGatewayClient, get_action_client
from tanam.backend.utils.api_errors import error_response

logger = logging.getLogger(__name__)

router = APIRouter()


def _bearer(request: Request) -> str | None:
    auth = request.headers.get("Authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None


@router.post("/qr")
async def qr_proxy(request: Request, client: ActionGatewayClient = Depends(get_action_client)):
    body = await request.body()
    try:
        status_code, content, content_type = await client.proxy(body, _bearer(request))
    except httpx.TimeoutException:
        return error_response(request, "upstream_timeout", "Request timeout - QR service took too long to respond", 504)
    except httpx.HTTPError as e:
        logger.warning("qr_proxy_failed error=%s", str(e)[:200])
        return error_response(request, "upstream_unreachable", "Unable to connect to QR service. Please try again later.", 502)
    return Response(content=content, status_code=status_code, media_type=content_type)
