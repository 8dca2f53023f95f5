"""Health and ready endpoints."""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from tanam.backend.config import get_settings, is_identity_configured
from tanam.backend.deps import get_db

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok", "service": "tanam-dashboard"}


@router.get("/ready")
def ready(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        return JSONResponse({"status": "error", "detail": str(e)[:200]}, status_code=503)
    return {"status": "ok", "identity_configured": is_identity_configured(get_settings())}
