"""
Settlement Scheduler

Two independent polling loops:
- settlement loop: start due competitions, finalize ended competitions,
  expire stale challenge invitations, finalize ended challenges
- margin loop: run the liquidation sweep

Every entity is processed in its own session; one failure is logged and
recorded in the tick summary and never aborts the rest of the batch.
"""

from typing import Awaitable, Callable, Optional
from uuid import UUID
import asyncio
import logging

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chartvolt.core.clock import utcnow
from chartvolt.core.config import settings
from chartvolt.core.exceptions import ConfigurationError, IntegrityViolation
from chartvolt.services import challenge_settler, competition_settler
from chartvolt.services.challenge_settler import ChallengeSettler
from chartvolt.services.competition_settler import CompetitionSettler
from chartvolt.services.effects import EffectRunner
from chartvolt.services.liquidation import BatchSummary, LiquidationSweep, SweepSummary
from chartvolt.services.prices import PriceSource
from chartvolt.services.risk import MarginThresholds

logger = logging.getLogger(__name__)


class SettlementScheduler:
    """Drives the settlement and margin-check cadences"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Optional[Redis],
        settlement_interval: Optional[float] = None,
        margin_interval: Optional[float] = None,
        thresholds: Optional[MarginThresholds] = None
    ):
        self.session_factory = session_factory
        self.prices = PriceSource(redis)
        self.effects = EffectRunner(redis)
        self.settlement_interval = settlement_interval or settings.SETTLEMENT_POLL_SECONDS
        self.margin_interval = margin_interval or settings.MARGIN_CHECK_SECONDS
        # Built eagerly so bad thresholds stop startup instead of every sweep
        self.sweep = LiquidationSweep(
            session_factory,
            self.prices,
            self.effects,
            thresholds or MarginThresholds.from_settings(),
        )
        self.running = False
        self.tasks: list[asyncio.Task] = []
        self.last_settlement: Optional[dict] = None
        self.last_margin_check: Optional[dict] = None

    async def start(self):
        """Start both loops in the background."""
        if self.running:
            return
        self.running = True
        logger.info(
            f"Starting scheduler (settlement every {self.settlement_interval}s, "
            f"margin check every {self.margin_interval}s)"
        )
        self.tasks = [
            asyncio.create_task(self._settlement_loop()),
            asyncio.create_task(self._margin_loop()),
        ]

    async def stop(self):
        """Stop both loops and wait for the current tick to unwind."""
        logger.info("Stopping scheduler")
        self.running = False
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []
        logger.info("Scheduler stopped")

    async def _settlement_loop(self):
        while self.running:
            try:
                await self.run_settlement_tick()
            except Exception as e:
                logger.error(f"Settlement tick crashed: {e}", exc_info=True)
            await asyncio.sleep(self.settlement_interval)

    async def _margin_loop(self):
        while self.running:
            try:
                await self.run_margin_tick()
            except Exception as e:
                logger.error(f"Margin tick crashed: {e}", exc_info=True)
            await asyncio.sleep(self.margin_interval)

    # ------------------------------------------------------------------
    # TICKS
    # ------------------------------------------------------------------

    async def run_settlement_tick(self) -> dict:
        now = utcnow()
        async with self.session_factory() as db:
            async with db.begin():
                to_start = await competition_settler.due_to_start(db, now)
                to_finalize = await competition_settler.due_to_finalize(db, now)
                to_expire = await challenge_settler.due_to_expire(db, now)
                challenges = await challenge_settler.due_to_finalize(db, now)

        results = {
            "competitions_started": await self._process(
                "start competition", to_start,
                lambda settler, entity_id: settler.start_competition(entity_id),
                self._competition_settler,
            ),
            "competitions_finalized": await self._process(
                "finalize competition", to_finalize,
                lambda settler, entity_id: settler.finalize_competition(entity_id),
                self._competition_settler,
            ),
            "challenges_expired": await self._process(
                "expire challenge", to_expire,
                lambda settler, entity_id: settler.expire_challenge(entity_id),
                self._challenge_settler,
            ),
            "challenges_finalized": await self._process(
                "finalize challenge", challenges,
                lambda settler, entity_id: settler.finalize_challenge(entity_id),
                self._challenge_settler,
            ),
        }
        summary = {name: result.to_dict() for name, result in results.items()}
        summary["ran_at"] = now.isoformat()
        self.last_settlement = summary

        if any(result.checked for result in results.values()):
            logger.info(
                "Settlement tick: "
                + ", ".join(
                    f"{name}={result.succeeded}/{result.checked}"
                    for name, result in results.items()
                )
            )
        return summary

    async def run_margin_tick(self) -> dict:
        now = utcnow()
        result: SweepSummary = await self.sweep.run()
        summary = result.to_dict()
        summary["ran_at"] = now.isoformat()
        self.last_margin_check = summary
        return summary

    # ------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------

    def _competition_settler(self, db: AsyncSession) -> CompetitionSettler:
        return CompetitionSettler(db, self.prices, self.effects)

    def _challenge_settler(self, db: AsyncSession) -> ChallengeSettler:
        return ChallengeSettler(db, self.prices, self.effects)

    async def _process(
        self,
        label: str,
        entity_ids: list[UUID],
        action: Callable[[object, UUID], Awaitable[object]],
        build: Callable[[AsyncSession], object]
    ) -> BatchSummary:
        summary = BatchSummary()
        for entity_id in entity_ids:
            summary.checked += 1
            try:
                async with self.session_factory() as db:
                    await action(build(db), entity_id)
                summary.succeeded += 1
            except IntegrityViolation as e:
                logger.critical(f"INTEGRITY VIOLATION during {label} {entity_id}: {e}")
                summary.record_failure(entity_id, e)
            except ConfigurationError as e:
                logger.error(f"Configuration error during {label} {entity_id}: {e}")
                summary.record_failure(entity_id, e)
            except Exception as e:
                logger.error(f"Failed to {label} {entity_id}: {e}", exc_info=True)
                summary.record_failure(entity_id, e)
        return summary
