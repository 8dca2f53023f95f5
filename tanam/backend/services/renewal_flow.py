"""Renew a chatbot through the action webhook and confirm it by polling.

Used by ``POST /api/chatbots/{id}/renew`` and by plan purchase, which is a
renewal onto a selected plan.
"""
from __future__ import annotations

import asyncio
import logging

from sqlalchemy.orm import sessionmaker

from tanam.backend.auth import CurrentUser
from tanam.backend.clients.actions import ActionGatewayClient
from tanam.backend.config import get_settings
from tanam.backend.models.chatbot import Chatbot
from tanam.backend.services.chatbots import read_renewal_snapshot
from tanam.backend.services.compensation import persist_renewal_fallback
from tanam.backend.services.renewal import RenewalOutcome, RenewalPoller, RenewalSnapshot

logger = logging.getLogger(__name__)


async def renew_chatbot(
    factory: sessionmaker,
    client: ActionGatewayClient,
    user: CurrentUser,
    bot: Chatbot,
    payload: dict,
) -> RenewalOutcome:
    baseline = RenewalSnapshot(expired_at=bot.expired_at, ai_quota=bot.ai_quota or 0)
    chatbot_id = bot.id
    s = get_settings()

    def _read() -> RenewalSnapshot | None:
        with factory() as sess:
            return read_renewal_snapshot(sess, user.id, chatbot_id)

    def _persist(expected: RenewalSnapshot) -> bool:
        with factory() as sess:
            return persist_renewal_fallback(
                sess,
                user_id=user.id,
                chatbot_id=chatbot_id,
                expired_at=expected.expired_at,
                ai_quota=expected.ai_quota,
                bucket_seconds=s.compensation_bucket_seconds,
            )

    async def read_latest():
        return await asyncio.to_thread(_read)

    async def persist_fallback(expected: RenewalSnapshot) -> bool:
        return await asyncio.to_thread(_persist, expected)

    async def do_renew():
        return await client.invoke("bot_renew", payload, user.access_token, strict=False)

    poller = RenewalPoller(
        read_latest,
        persist_fallback,
        attempts=s.renewal_poll_attempts,
        interval=s.renewal_poll_interval_seconds,
        fallback_days=s.renewal_fallback_days,
        fallback_quota=s.renewal_fallback_quota,
    )
    outcome = await poller.run(baseline, do_renew)
    logger.info(
        "renewal_finished chatbot_id=%s state=%s attempts=%s",
        chatbot_id, outcome.state.value, outcome.attempts,
    )
    return outcome
