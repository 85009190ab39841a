"""
Liquidation Sweep

Periodic margin check across every active competition:
1. Load participants with open exposure and their open positions
2. Fetch quotes for the union of symbols in one batch
3. Value each participant's open positions at the side-aware mark
4. Classify with the RiskEvaluator; on liquidation close every open
   position (close_reason=margin_call) and, if the competition says so,
   disqualify the participant

Each position closes in its own transaction so one failure leaves the rest
closed. Positions opened at or before liquidated_at and still open are
force-closed again on the next sweep; positions opened after it are judged
on the margin level alone.

Row locks are taken competition, participant, position, the same order
settlement takes them, so a sweep racing a settlement waits and then sees
the positions already closed.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chartvolt.core.clock import utcnow
from chartvolt.core.config import settings
from chartvolt.core.exceptions import ConfigurationError
from chartvolt.models.competition import Competition, CompetitionParticipant, CompetitionStatus, ParticipantStatus
from chartvolt.models.position import CloseReason, PositionStatus, TradingPosition
from chartvolt.services.effects import EffectRunner, Notification
from chartvolt.services.positions import calculate_pnl, close_position, mark_price
from chartvolt.services.prices import PriceSource, Quote
from chartvolt.services.risk import MarginReport, MarginStatus, MarginThresholds, RiskEvaluator

logger = logging.getLogger(__name__)


@dataclass
class BatchSummary:
    """Outcome of one scheduler pass: {checked, succeeded, failed: [{id, error}]}"""
    checked: int = 0
    succeeded: int = 0
    failed: list[dict] = field(default_factory=list)

    def record_failure(self, entity_id, error: Exception | str) -> None:
        self.failed.append({"id": str(entity_id), "error": str(error)})

    def to_dict(self) -> dict:
        return {"checked": self.checked, "succeeded": self.succeeded, "failed": list(self.failed)}


@dataclass
class SweepSummary(BatchSummary):
    liquidated_participants: int = 0
    closed_positions: int = 0
    statuses: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "liquidated_participants": self.liquidated_participants,
            "closed_positions": self.closed_positions,
            "statuses": dict(self.statuses),
        })
        return data


class LiquidationSweep:
    """Margin check and forced closure across all active competitions"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        prices: PriceSource,
        effects: EffectRunner,
        thresholds: Optional[MarginThresholds] = None,
        mark_convention: Optional[str] = None
    ):
        self.session_factory = session_factory
        self.prices = prices
        self.effects = effects
        self.thresholds = thresholds or MarginThresholds.from_settings()
        self.mark_convention = mark_convention or settings.MARK_PRICE_CONVENTION

    async def run(self) -> SweepSummary:
        summary = SweepSummary()

        async with self.session_factory() as db:
            async with db.begin():
                competitions, participants, positions = await self._snapshot(db)

        if not participants:
            return summary

        symbols = {p.symbol.upper() for p in positions}
        quotes = await self.prices.fetch_prices(symbols)

        by_participant: dict[UUID, list[TradingPosition]] = {}
        for position in positions:
            by_participant.setdefault(position.participant_id, []).append(position)

        for participant in participants:
            summary.checked += 1
            try:
                competition = competitions[participant.competition_id]
                await self._check_participant(
                    competition, participant, by_participant.get(participant.id, []), quotes, summary
                )
                summary.succeeded += 1
            except ConfigurationError as e:
                logger.error(f"Margin check misconfigured for competition {participant.competition_id}: {e}")
                summary.record_failure(participant.id, e)
            except Exception as e:
                logger.error(f"Margin check failed for participant {participant.id}: {e}", exc_info=True)
                summary.record_failure(participant.id, e)

        logger.info(
            f"Margin sweep: checked={summary.checked} liquidated={summary.liquidated_participants} "
            f"closed={summary.closed_positions} failed={len(summary.failed)}"
        )
        return summary

    async def _snapshot(self, db: AsyncSession):
        stmt = select(Competition).where(Competition.status == CompetitionStatus.ACTIVE.value)
        competitions = {c.id: c for c in (await db.execute(stmt)).scalars().all()}
        if not competitions:
            return competitions, [], []

        stmt = (
            select(CompetitionParticipant)
            .where(
                CompetitionParticipant.competition_id.in_(list(competitions)),
                CompetitionParticipant.current_open_positions > 0,
                or_(
                    CompetitionParticipant.status == ParticipantStatus.ACTIVE.value,
                    CompetitionParticipant.liquidated_at.is_not(None),
                ),
            )
            .order_by(CompetitionParticipant.competition_id, CompetitionParticipant.id)
        )
        participants = list((await db.execute(stmt)).scalars().all())
        if not participants:
            return competitions, [], []

        stmt = (
            select(TradingPosition)
            .where(
                TradingPosition.participant_id.in_([p.id for p in participants]),
                TradingPosition.status == PositionStatus.OPEN.value,
            )
            .order_by(TradingPosition.opened_at, TradingPosition.id)
        )
        positions = list((await db.execute(stmt)).scalars().all())
        return competitions, participants, positions

    def evaluator_for(self, competition: Competition) -> RiskEvaluator:
        return RiskEvaluator(MarginThresholds.from_limits(competition.risk_limits, self.thresholds))

    def assess(
        self,
        competition: Competition,
        participant: CompetitionParticipant,
        positions: list[TradingPosition],
        quotes: dict[str, Quote]
    ) -> MarginReport:
        unrealized = Decimal("0")
        for position in positions:
            quote = quotes.get(position.symbol.upper())
            if quote is None:
                continue
            unrealized += calculate_pnl(position, mark_price(position.side, quote, self.mark_convention))
        return self.evaluator_for(competition).evaluate(
            participant.current_capital, float(unrealized), participant.used_margin
        )

    def pending_positions(
        self,
        participant: CompetitionParticipant,
        positions: list[TradingPosition]
    ) -> list[TradingPosition]:
        """Positions left open by an earlier liquidation; newer ones are not its concern"""
        if participant.liquidated_at is None:
            return []
        return [p for p in positions if p.opened_at <= participant.liquidated_at]

    async def _check_participant(
        self,
        competition: Competition,
        participant: CompetitionParticipant,
        positions: list[TradingPosition],
        quotes: dict[str, Quote],
        summary: SweepSummary
    ) -> None:
        report = self.assess(competition, participant, positions, quotes)
        summary.statuses[report.status.value] = summary.statuses.get(report.status.value, 0) + 1

        pending = self.pending_positions(participant, positions)
        if report.status != MarginStatus.LIQUIDATION and not pending:
            if report.status != MarginStatus.HEALTHY:
                logger.info(
                    f"Participant {participant.id} at margin level {report.margin_level:.2f}% "
                    f"({report.status.value})"
                )
            return

        if pending:
            # Finish the earlier liquidation regardless of the current level
            logger.warning(
                f"Retrying liquidation of participant {participant.id} in competition {competition.id}: "
                f"{len(pending)} positions still open"
            )
            await self._liquidate(competition, participant, pending, quotes, report, summary, fresh=False)
            return

        logger.warning(
            f"Liquidating participant {participant.id} in competition {competition.id}: "
            f"margin level {report.margin_level:.2f}%"
        )
        await self._liquidate(competition, participant, positions, quotes, report, summary, fresh=True)

    async def _liquidate(
        self,
        competition: Competition,
        participant: CompetitionParticipant,
        positions: list[TradingPosition],
        quotes: dict[str, Quote],
        report: MarginReport,
        summary: SweepSummary,
        fresh: bool
    ) -> None:
        errors = []
        for position in positions:
            quote = quotes.get(position.symbol.upper())
            if quote is None:
                errors.append(f"no quote for {position.symbol} (position {position.id})")
                continue
            try:
                async with self.session_factory() as db:
                    async with db.begin():
                        closed = await self._close_one(db, competition.id, participant.id, position.id, quote)
                if closed:
                    summary.closed_positions += 1
            except Exception as e:
                logger.error(f"Failed to close position {position.id}: {e}")
                errors.append(f"position {position.id}: {e}")

        async with self.session_factory() as db:
            async with db.begin():
                current = await db.get(Competition, competition.id, populate_existing=True, with_for_update=True)
                if current is None or current.status != CompetitionStatus.ACTIVE.value:
                    logger.info(
                        f"Competition {competition.id} settled during liquidation of participant "
                        f"{participant.id}, leaving it to settlement"
                    )
                    return
                owner = await db.get(
                    CompetitionParticipant, participant.id, populate_existing=True, with_for_update=True
                )
                if fresh:
                    owner.liquidated_at = utcnow()
                    owner.liquidation_reason = (
                        f"Margin level {report.margin_level:.2f}% below "
                        f"{self.evaluator_for(competition).thresholds.liquidation}%"
                    )
                fully_closed = owner.current_open_positions == 0
                if (
                    fully_closed
                    and competition.disqualify_on_liquidation
                    and owner.status == ParticipantStatus.ACTIVE.value
                ):
                    owner.status = ParticipantStatus.DISQUALIFIED.value
                    owner.disqualification_reason = "liquidated"
                user_id = owner.user_id
                remaining = owner.current_open_positions

        if fresh:
            summary.liquidated_participants += 1
            await self.effects.run([
                Notification(user_id, "liquidation", {
                    "competitionName": competition.name,
                    "competitionId": str(competition.id),
                    "marginLevel": round(report.margin_level, 2),
                    "disqualified": competition.disqualify_on_liquidation,
                })
            ])

        if errors:
            # liquidated_at now predates the positions left open; next sweep retries them
            raise RuntimeError(
                f"Partial liquidation, {remaining} positions still open: " + "; ".join(errors)
            )

    async def _close_one(
        self,
        db: AsyncSession,
        competition_id: UUID,
        participant_id: UUID,
        position_id: UUID,
        quote: Quote
    ) -> bool:
        """Lock competition, owner and position in that order, then close if still open"""
        competition = await db.get(Competition, competition_id, populate_existing=True, with_for_update=True)
        if competition is None or competition.status != CompetitionStatus.ACTIVE.value:
            return False
        owner = await db.get(CompetitionParticipant, participant_id, populate_existing=True, with_for_update=True)
        position = await db.get(TradingPosition, position_id, populate_existing=True, with_for_update=True)
        if owner is None or position is None or position.status != PositionStatus.OPEN.value:
            return False
        close_position(
            position,
            owner,
            mark_price(position.side, quote, self.mark_convention),
            CloseReason.MARGIN_CALL,
        )
        return True
