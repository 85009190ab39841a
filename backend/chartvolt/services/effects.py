"""
Best-effort side effects of settlement and liquidation.

Settlement computes a list of effects; the EffectRunner publishes them to
Redis pub/sub after the money movement has committed. Each publish has its
own timeout and a failure is logged and counted, never raised.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional, Union
from uuid import UUID
import asyncio
import json
import logging

from redis.asyncio import Redis

from chartvolt.core.clock import utcnow
from chartvolt.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    user_id: UUID
    template: str
    variables: dict = field(default_factory=dict)


@dataclass
class XPAward:
    user_id: UUID
    amount: int
    reason: str


@dataclass
class BadgeEvaluation:
    user_id: UUID
    trigger: str


Effect = Union[Notification, XPAward, BadgeEvaluation]


@dataclass
class EffectReport:
    dispatched: int = 0
    failed: int = 0
    skipped: int = 0


class EffectRunner:
    """Publishes notification, XP and badge events; never raises into the caller"""

    def __init__(
        self,
        redis: Optional[Redis],
        timeout: Optional[float] = None,
        notification_channel: Optional[str] = None,
        xp_channel: Optional[str] = None
    ):
        self.redis = redis
        self.timeout = timeout if timeout is not None else settings.EFFECT_TIMEOUT_SECONDS
        self.notification_channel = notification_channel or settings.NOTIFICATION_CHANNEL
        self.xp_channel = xp_channel or settings.XP_CHANNEL

    async def run(self, effects: Iterable[Effect]) -> EffectReport:
        report = EffectReport()
        effects = list(effects)

        if self.redis is None:
            if effects:
                logger.warning(f"Redis unavailable, dropping {len(effects)} effects")
            report.skipped = len(effects)
            return report

        for effect in effects:
            try:
                channel, payload = self._encode(effect)
                await asyncio.wait_for(self.redis.publish(channel, payload), timeout=self.timeout)
                report.dispatched += 1
            except asyncio.TimeoutError:
                report.failed += 1
                logger.warning(f"Effect publish timed out after {self.timeout}s: {type(effect).__name__}")
            except Exception as e:
                report.failed += 1
                logger.warning(f"Effect publish failed ({type(effect).__name__} for {effect.user_id}): {e}")

        return report

    def _encode(self, effect: Effect) -> tuple[str, str]:
        timestamp = utcnow().isoformat()

        if isinstance(effect, Notification):
            return self.notification_channel, json.dumps({
                "type": "notification",
                "user_id": str(effect.user_id),
                "template": effect.template,
                "variables": effect.variables,
                "timestamp": timestamp,
            }, default=str)
        elif isinstance(effect, XPAward):
            return self.xp_channel, json.dumps({
                "type": "award_xp",
                "user_id": str(effect.user_id),
                "amount": effect.amount,
                "reason": effect.reason,
                "timestamp": timestamp,
            })
        elif isinstance(effect, BadgeEvaluation):
            return self.xp_channel, json.dumps({
                "type": "evaluate_badges",
                "user_id": str(effect.user_id),
                "trigger": effect.trigger,
                "timestamp": timestamp,
            })
        raise TypeError(f"Unknown effect type: {type(effect).__name__}")
