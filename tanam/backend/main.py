"""FastAPI entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tanam.backend.config import get_settings
from tanam.backend.logging_setup import configure_logging
from tanam.backend.middleware.trace_id import HEADER, TraceIdMiddleware, request_trace_id
from tanam.backend.routers import auth, balance, chatbots, dashboard, health, plans, qr_proxy
from tanam.backend.utils.api_errors import error_envelope

configure_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    s = get_settings()
    logger.info("startup env=%s refresh=%ss", s.app_env, s.dashboard_refresh_seconds)
    yield
    logger.info("shutdown")


app = FastAPI(
    title="Tanam Dashboard",
    description="WhatsApp chatbot dashboard: balance, plans, chatbots",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(TraceIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[HEADER],
)

app.include_router(health.router, tags=["System"])
app.include_router(auth.router, prefix="/api/auth", tags=["Auth"])
app.include_router(balance.router, prefix="/api/balance", tags=["Balance"])
app.include_router(plans.router, prefix="/api/plans", tags=["Plans"])
app.include_router(chatbots.router, prefix="/api/chatbots", tags=["Chatbots"])
app.include_router(dashboard.router, prefix="/api/dashboard", tags=["Dashboard"])
app.include_router(qr_proxy.router, prefix="/api", tags=["QR"])


def _json_error(request: Request, status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    trace_id = request_trace_id(request)
    resp = JSONResponse(
        content=error_envelope(code=code, message=message, trace_id=trace_id, detail=detail),
        status_code=status_code,
    )
    resp.headers[HEADER] = trace_id
    return resp


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail
    if not isinstance(detail, str):
        detail = str(detail) if detail else "Request failed"
    code = "unauthorized" if exc.status_code == 401 else "http_error"
    # `detail` stays the human message for clients of the plain FastAPI shape
    resp = _json_error(request, exc.status_code, code, detail, detail=detail)
    for k, v in (exc.headers or {}).items():
        resp.headers[k] = v
    return resp


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg") or "Invalid request")
    return _json_error(request, 422, "validation_error", message)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Never return HTML: unhandled errors become a 500 envelope with trace_id."""
    trace_id = request_trace_id(request)
    logger.exception("Unhandled exception trace_id=%s path=%s", trace_id, request.url.path)
    detail_safe = str(exc)[:200].replace("'", "")
    return _json_error(request, 500, "internal_error", "Internal server error", detail_safe)
