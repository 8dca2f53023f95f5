"""Dashboard snapshot and its live refresh stream."""
from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session, sessionmaker

from tanam.backend.auth import CurrentUser, get_current_user
from tanam.backend.config import get_settings
from tanam.backend.deps import get_db, get_db_factory
from tanam.backend.services.dashboard_state import (
    DashboardSnapshot,
    DashboardState,
    RefreshPoller,
    load_snapshot,
    load_snapshot_sync,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


@router.get("")
def get_dashboard(
    tx_page: int = Query(1, ge=1),
    pay_page: int = Query(1, ge=1),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    snapshot = load_snapshot_sync(db, user.id, generation=1)
    return snapshot.to_dict(tx_page, pay_page, get_settings().page_size)


@router.get("/stream")
async def stream_dashboard(
    request: Request,
    max_events: int | None = Query(None, ge=1),
    user: CurrentUser = Depends(get_current_user),
    factory: sessionmaker = Depends(get_db_factory),
):
    """Server-Sent Events: one ``snapshot`` event per applied refresh cycle."""
    s = get_settings()
    queue: asyncio.Queue[DashboardSnapshot] = asyncio.Queue()
    state = DashboardState()

    async def load(generation: int) -> DashboardSnapshot:
        return await load_snapshot(factory, user.id, generation)

    async def push(snapshot: DashboardSnapshot) -> None:
        await queue.put(snapshot)

    poller = RefreshPoller(state, load, interval=s.dashboard_refresh_seconds, on_update=push)

    async def events():
        sent = 0
        poller.start()
        logger.info("dashboard_stream_open user_id=%s", user.id)
        try:
            while max_events is None or sent < max_events:
                if await request.is_disconnected():
                    break
                try:
                    snapshot = await asyncio.wait_for(queue.get(), timeout=s.dashboard_refresh_seconds)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield _sse("snapshot", snapshot.to_dict(page_size=s.page_size))
                sent += 1
        finally:
            await poller.stop()
            logger.info(
                "dashboard_stream_closed user_id=%s sent=%s discarded=%s",
                user.id, sent, state.discarded,
            )

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
