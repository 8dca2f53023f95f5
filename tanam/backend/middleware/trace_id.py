"""Per-request trace id, echoed in ``X-Trace-Id`` and in error envelopes."""
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

SCOPE_KEY = "trace_id"
HEADER = "X-Trace-Id"


def ensure_trace_id(scope: dict) -> str:
    """Get or set trace_id on the ASGI scope; stable for the request lifecycle."""
    tid = scope.get(SCOPE_KEY)
    if tid and isinstance(tid, str):
        return tid
    tid = str(uuid.uuid4())[:16]
    scope[SCOPE_KEY] = tid
    return tid


def request_trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", None) or ensure_trace_id(request.scope)


class TraceIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        incoming = (request.headers.get(HEADER) or "").strip()
        if incoming:
            request.scope[SCOPE_KEY] = incoming[:64]
        request.state.trace_id = ensure_trace_id(request.scope)
        response = await call_next(request)
        response.headers[HEADER] = request.state.trace_id
        return response
