"""Renewal confirmation poller.

The renew webhook does not report the committed state. After invoking it we
re-read ``(expired_at, ai_quota)`` until either differs from the snapshot
taken before the request, or give up and apply the expected outcome locally.

    IDLE -> REQUESTED -> POLLING -> CONFIRMED | TIMED_OUT
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from tanam.backend.clients.actions import ActionResult

logger = logging.getLogger(__name__)


class RenewalState(str, enum.Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    POLLING = "polling"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class RenewalSnapshot:
    expired_at: Optional[datetime]
    ai_quota: Optional[int]

    def differs_from(self, baseline: "RenewalSnapshot") -> bool:
        changed_expiry = self.expired_at is not None and self.expired_at != baseline.expired_at
        changed_quota = self.ai_quota is not None and self.ai_quota != baseline.ai_quota
        return changed_expiry or changed_quota


@dataclass
class RenewalOutcome:
    state: RenewalState
    baseline: RenewalSnapshot
    attempts: int = 0
    expired_at: Optional[datetime] = None
    ai_quota: Optional[int] = None
    pending_confirmation: bool = False
    fallback_persisted: bool = False
    message: Optional[str] = None
    optimistic: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "attempts": self.attempts,
            "expired_at": self.expired_at.isoformat() if self.expired_at else None,
            "ai_quota": self.ai_quota,
            "pending_confirmation": self.pending_confirmation,
            "fallback_persisted": self.fallback_persisted,
            "message": self.message,
            "optimistic": {
                k: v.isoformat() if isinstance(v, datetime) else v
                for k, v in self.optimistic.items()
            },
        }


def compute_fallback(
    baseline: RenewalSnapshot,
    now: datetime,
    days: int = 30,
    quota_increment: int = 10,
) -> RenewalSnapshot:
    """Expected result of a renewal: extend from the later of now/expiry, add quota."""
    base = baseline.expired_at if baseline.expired_at and baseline.expired_at > now else now
    return RenewalSnapshot(
        expired_at=base + timedelta(days=days),
        ai_quota=(baseline.ai_quota or 0) + quota_increment,
    )


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def optimistic_patch(data: Any, baseline: RenewalSnapshot) -> dict:
    """Fields the renew webhook echoed back, applied before polling confirms them."""
    if not isinstance(data, dict):
        return {}
    out: dict = {}
    expired_at = _parse_datetime(data.get("expired_at"))
    if expired_at is not None:
        out["expired_at"] = expired_at
    if isinstance(data.get("ai_quota"), int) and not isinstance(data.get("ai_quota"), bool):
        out["ai_quota"] = data["ai_quota"]
    if isinstance(data.get("ai_quota_increment"), int) and not isinstance(data.get("ai_quota_increment"), bool):
        out["ai_quota"] = (baseline.ai_quota or 0) + data["ai_quota_increment"]
    return out


ReadFn = Callable[[], Awaitable[Optional[RenewalSnapshot]]]
PersistFn = Callable[[RenewalSnapshot], Awaitable[bool]]
RenewFn = Callable[[], Awaitable[ActionResult]]


class RenewalPoller:
    """Runs one renewal request through the confirmation state machine."""

    def __init__(
        self,
        read_latest: ReadFn,
        persist_fallback: PersistFn,
        *,
        attempts: int = 5,
        interval: float = 1.0,
        fallback_days: int = 30,
        fallback_quota: int = 10,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._read_latest = read_latest
        self._persist_fallback = persist_fallback
        self._attempts = attempts
        self._interval = interval
        self._fallback_days = fallback_days
        self._fallback_quota = fallback_quota
        self._sleep = sleep
        self._clock = clock
        self.state = RenewalState.IDLE

    async def run(self, baseline: RenewalSnapshot, renew: RenewFn) -> RenewalOutcome:
        self.state = RenewalState.REQUESTED
        result = await renew()
        if not result.ok:
            self.state = RenewalState.FAILED
            return RenewalOutcome(state=self.state, baseline=baseline, message=result.message)

        outcome = RenewalOutcome(
            state=RenewalState.POLLING,
            baseline=baseline,
            optimistic=optimistic_patch(result.data, baseline),
        )
        self.state = RenewalState.POLLING
        for attempt in range(1, self._attempts + 1):
            await self._sleep(self._interval)
            outcome.attempts = attempt
            try:
                latest = await self._read_latest()
            except Exception:
                logger.exception("renewal_poll_read_failed attempt=%s", attempt)
                latest = None
            if latest is None:
                continue
            if latest.differs_from(baseline):
                self.state = RenewalState.CONFIRMED
                outcome.state = self.state
                outcome.expired_at = latest.expired_at or baseline.expired_at
                outcome.ai_quota = latest.ai_quota if latest.ai_quota is not None else baseline.ai_quota
                logger.info("renewal_confirmed attempt=%s", attempt)
                return outcome

        self.state = RenewalState.TIMED_OUT
        expected = compute_fallback(baseline, self._clock(), self._fallback_days, self._fallback_quota)
        outcome.state = self.state
        outcome.expired_at = expected.expired_at
        outcome.ai_quota = expected.ai_quota
        outcome.pending_confirmation = True
        try:
            outcome.fallback_persisted = await self._persist_fallback(expected)
        except Exception:
            logger.exception("renewal_fallback_persist_failed")
            outcome.fallback_persisted = False
        if outcome.fallback_persisted:
            outcome.message = (
                f"Renewal synced locally: active until {expected.expired_at.date().isoformat()}, "
                f"AI quota +{self._fallback_quota} ({expected.ai_quota})."
            )
        else:
            outcome.message = (
                "Renewal was processed. New expiry and quota will appear shortly; refresh if not visible."
            )
        logger.warning(
            "renewal_timed_out attempts=%s fallback_persisted=%s",
            outcome.attempts, outcome.fallback_persisted,
        )
        return outcome
