"""
Competition lifecycle service

Drives a single competition through its state machine:
    upcoming -> active      (start_competition, enough entrants)
    upcoming -> cancelled   (start_competition, too few entrants)
    active   -> completed   (finalize_competition, end_time reached)
    upcoming/active -> cancelled (cancel_competition, admin)

Each transition is gated by a conditional UPDATE on the competition row
(status check-and-set); claim, position closure, ledger writes and the
terminal status write commit together or not at all. After the claim,
participants and open positions are read FOR UPDATE so a concurrent margin
sweep waits on them. Notifications and XP are published only after the
commit.
"""

from typing import Optional
from uuid import UUID
import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chartvolt.core.clock import utcnow
from chartvolt.core.config import settings
from chartvolt.core.exceptions import EntityNotFound, IntegrityViolation
from chartvolt.models.competition import (
    Competition,
    CompetitionParticipant,
    CompetitionStatus,
    ParticipantStatus,
    can_transition,
)
from chartvolt.models.position import CloseReason, PositionStatus, TradingPosition
from chartvolt.models.wallet import PlatformTransactionType
from chartvolt.services.effects import EffectRunner, Notification
from chartvolt.services.ledger import credit_wallet, record_platform_transaction
from chartvolt.services.positions import close_position, fallback_exit_price, mark_price
from chartvolt.services.prices import PriceSource, Quote
from chartvolt.services.settlement import (
    CancellationSettlement,
    CompetitionSettlement,
    XPRewards,
    plan_competition_cancellation,
    plan_competition_settlement,
)

logger = logging.getLogger(__name__)

INSUFFICIENT_PARTICIPANTS = "Insufficient participants"


async def due_to_start(db: AsyncSession, now) -> list[UUID]:
    stmt = select(Competition.id).where(
        Competition.status == CompetitionStatus.UPCOMING.value,
        Competition.start_time <= now,
    ).order_by(Competition.start_time)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def due_to_finalize(db: AsyncSession, now) -> list[UUID]:
    stmt = select(Competition.id).where(
        Competition.status == CompetitionStatus.ACTIVE.value,
        Competition.end_time <= now,
    ).order_by(Competition.end_time)
    result = await db.execute(stmt)
    return list(result.scalars().all())


class CompetitionSettler:
    """Applies settlement plans for one competition at a time"""

    def __init__(
        self,
        db: AsyncSession,
        prices: PriceSource,
        effects: EffectRunner,
        mark_convention: Optional[str] = None,
        xp: Optional[XPRewards] = None
    ):
        self.db = db
        self.prices = prices
        self.effects = effects
        self.mark_convention = mark_convention or settings.MARK_PRICE_CONVENTION
        self.xp = xp or XPRewards.from_settings()

    # ------------------------------------------------------------------
    # COMPLETION
    # ------------------------------------------------------------------

    async def finalize_competition(self, competition_id: UUID) -> Optional[CompetitionSettlement]:
        """
        Settle a competition whose end time has passed.
        Returns None when another run already settled or cancelled it.
        """
        async with self.db.begin():
            competition = await self.db.get(Competition, competition_id)
            if competition is None:
                raise EntityNotFound(f"Competition {competition_id} not found")
            symbols = await self._open_symbols(competition_id)

        # Price fetch happens outside the transaction and never raises
        quotes = await self.prices.fetch_prices(symbols)

        async with self.db.begin():
            now = utcnow()
            claimed = await self._claim(
                competition_id,
                [CompetitionStatus.ACTIVE],
                now,
                Competition.end_time <= now,
            )
            if not claimed:
                current = await self.db.get(Competition, competition_id, populate_existing=True)
                logger.info(
                    f"Competition {competition_id} not claimable for settlement "
                    f"(status={current.status if current else 'missing'}), skipping"
                )
                return None

            competition = await self.db.get(Competition, competition_id, populate_existing=True)
            participants = await self._participants(competition_id)

            closed = await self._close_open_positions(
                competition_id, participants, quotes, CloseReason.COMPETITION_END, now
            )

            plan = plan_competition_settlement(competition, participants, self.xp)
            await self._apply_completion(competition, participants, plan, now)

        logger.info(
            f"Competition {competition_id} completed: {len(plan.winners)} winners, "
            f"{len(plan.disqualified)} disqualified, {closed} positions closed, "
            f"distributed={plan.total_distributed} fee={plan.platform_fee} "
            f"unclaimed={plan.unclaimed_pool}"
        )
        report = await self.effects.run(plan.effects)
        if report.failed:
            logger.warning(f"Competition {competition_id}: {report.failed} effects failed to publish")
        return plan

    async def _apply_completion(
        self,
        competition: Competition,
        participants: list[CompetitionParticipant],
        plan: CompetitionSettlement,
        now
    ) -> None:
        if not can_transition(competition.status, CompetitionStatus.COMPLETED):
            raise IntegrityViolation(
                f"Competition {competition.id} cannot move from {competition.status} to completed"
            )

        for credit in plan.credits:
            await credit_wallet(
                self.db,
                credit.user_id,
                credit.amount,
                credit.type,
                reference_id=competition.id,
                description=credit.description,
                details=credit.details,
            )

        for platform_credit in plan.platform_credits:
            await record_platform_transaction(
                self.db,
                platform_credit.type,
                platform_credit.amount,
                "competition",
                competition.id,
                platform_credit.description,
            )

        for participant in participants:
            participant_update = plan.participant_updates.get(participant.id)
            if participant_update is None:
                continue
            participant.final_rank = participant_update.final_rank
            participant.prize_amount = float(participant_update.prize_amount)
            if (
                participant_update.disqualification_reason
                and participant.status == ParticipantStatus.ACTIVE.value
            ):
                participant.status = ParticipantStatus.DISQUALIFIED.value
                participant.disqualification_reason = participant_update.disqualification_reason

        competition.total_collected = float(plan.total_collected)
        competition.net_prize_pool = float(plan.net_prize_pool)
        competition.total_distributed = float(plan.total_distributed)
        competition.platform_fee_earned = float(plan.platform_fee)
        competition.unclaimed_pool = float(plan.unclaimed_pool)
        competition.winners = [w.to_dict() for w in plan.winners]
        competition.disqualified = [d.to_dict() for d in plan.disqualified]
        competition.final_leaderboard = plan.leaderboard
        competition.winner_id = plan.winner_id
        competition.settled_at = now
        competition.updated_at = now

        # Terminal status write last
        competition.status = CompetitionStatus.COMPLETED.value
        await self.db.flush()

    # ------------------------------------------------------------------
    # CANCELLATION
    # ------------------------------------------------------------------

    async def cancel_competition(self, competition_id: UUID, reason: str) -> Optional[CancellationSettlement]:
        """
        Close any open positions, refund every entry fee and mark the
        competition cancelled. Returns None when the competition is already terminal.
        """
        async with self.db.begin():
            competition = await self.db.get(Competition, competition_id)
            if competition is None:
                raise EntityNotFound(f"Competition {competition_id} not found")
            symbols = await self._open_symbols(competition_id)

        quotes = await self.prices.fetch_prices(symbols)

        async with self.db.begin():
            now = utcnow()
            claimed = await self._claim(
                competition_id,
                [CompetitionStatus.UPCOMING, CompetitionStatus.ACTIVE],
                now,
            )
            if not claimed:
                current = await self.db.get(Competition, competition_id, populate_existing=True)
                logger.info(
                    f"Competition {competition_id} already "
                    f"{current.status if current else 'missing'}, not cancelling"
                )
                return None

            competition = await self.db.get(Competition, competition_id, populate_existing=True)
            if not can_transition(competition.status, CompetitionStatus.CANCELLED):
                raise IntegrityViolation(
                    f"Competition {competition_id} cannot move from {competition.status} to cancelled"
                )
            participants = await self._participants(competition_id)
            closed = await self._close_open_positions(
                competition_id, participants, quotes, CloseReason.COMPETITION_CANCELLED, now
            )
            plan = plan_competition_cancellation(competition, participants, reason)

            for credit in plan.credits:
                await credit_wallet(
                    self.db,
                    credit.user_id,
                    credit.amount,
                    credit.type,
                    reference_id=competition.id,
                    description=credit.description,
                    details=credit.details,
                )

            competition.cancellation_reason = reason
            competition.total_collected = float(plan.total_collected)
            competition.total_refunded = float(plan.total_refunded)
            competition.platform_fee_earned = 0.0
            competition.unclaimed_pool = 0.0
            competition.net_prize_pool = 0.0
            competition.total_distributed = 0.0
            competition.settled_at = now
            competition.updated_at = now
            competition.status = CompetitionStatus.CANCELLED.value
            await self.db.flush()

        logger.info(
            f"Competition {competition_id} cancelled ({reason}): "
            f"refunded {plan.total_refunded} to {len(plan.credits)} participants, "
            f"{closed} positions closed"
        )
        await self.effects.run(plan.effects)
        return plan

    # ------------------------------------------------------------------
    # START
    # ------------------------------------------------------------------

    async def start_competition(self, competition_id: UUID) -> str:
        """
        Activate an upcoming competition whose start time has passed, or cancel
        it with refunds when too few traders entered.
        Returns "started", "cancelled" or "skipped".
        """
        async with self.db.begin():
            now = utcnow()
            competition = await self.db.get(Competition, competition_id, populate_existing=True)
            if competition is None:
                raise EntityNotFound(f"Competition {competition_id} not found")
            if competition.status != CompetitionStatus.UPCOMING.value or competition.start_time > now:
                return "skipped"

            stmt = select(func.count()).select_from(CompetitionParticipant).where(
                CompetitionParticipant.competition_id == competition_id,
                CompetitionParticipant.status == ParticipantStatus.ACTIVE.value,
            )
            entrants = (await self.db.execute(stmt)).scalar_one()
            required = competition.min_participants or settings.DEFAULT_MIN_PARTICIPANTS
            enough = entrants >= required

            if enough:
                stmt = (
                    update(Competition)
                    .where(
                        Competition.id == competition_id,
                        Competition.status == CompetitionStatus.UPCOMING.value,
                    )
                    .values(status=CompetitionStatus.ACTIVE.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                result = await self.db.execute(stmt)
                if result.rowcount != 1:
                    return "skipped"
                participants = await self._participants(competition_id)
                name = competition.name

        if not enough:
            logger.info(
                f"Competition {competition_id} has {entrants}/{required} participants, cancelling"
            )
            plan = await self.cancel_competition(
                competition_id, f"{INSUFFICIENT_PARTICIPANTS} ({entrants}/{required})"
            )
            return "cancelled" if plan else "skipped"

        logger.info(f"Competition {competition_id} started with {entrants} participants")
        await self.effects.run([
            Notification(p.user_id, "competition_started", {
                "competitionName": name,
                "competitionId": str(competition_id),
            })
            for p in participants
            if p.status == ParticipantStatus.ACTIVE.value
        ])
        return "started"

    # ------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------

    async def _claim(self, competition_id: UUID, statuses, now, *criteria) -> bool:
        """Compare-and-set on status; the row lock is held until the transaction ends"""
        stmt = (
            update(Competition)
            .where(
                Competition.id == competition_id,
                Competition.status.in_([s.value for s in statuses]),
                Competition.settled_at.is_(None),
                *criteria,
            )
            .values(settlement_locked_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def _participants(self, competition_id: UUID) -> list[CompetitionParticipant]:
        """Single snapshot of every participant, ordered for stable iteration"""
        stmt = (
            select(CompetitionParticipant)
            .where(CompetitionParticipant.competition_id == competition_id)
            .order_by(CompetitionParticipant.entered_at, CompetitionParticipant.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _open_symbols(self, competition_id: UUID) -> list[str]:
        stmt = select(TradingPosition.symbol).where(
            TradingPosition.competition_id == competition_id,
            TradingPosition.status == PositionStatus.OPEN.value,
        ).distinct()
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _close_open_positions(
        self,
        competition_id: UUID,
        participants: list,
        quotes: dict[str, Quote],
        reason: CloseReason,
        now
    ) -> int:
        stmt = (
            select(TradingPosition)
            .where(
                TradingPosition.competition_id == competition_id,
                TradingPosition.status == PositionStatus.OPEN.value,
            )
            .order_by(TradingPosition.opened_at, TradingPosition.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        positions = (await self.db.execute(stmt)).scalars().all()
        by_id = {p.id: p for p in participants}

        for position in positions:
            owner = by_id.get(position.participant_id)
            if owner is None:
                raise IntegrityViolation(
                    f"Open position {position.id} belongs to unknown participant {position.participant_id}"
                )
            quote = quotes.get(position.symbol.upper())
            if quote is not None:
                exit_price = mark_price(position.side, quote, self.mark_convention)
            else:
                exit_price = fallback_exit_price(position)
                logger.warning(
                    f"No quote for {position.symbol}, closing position {position.id} at last price {exit_price}"
                )
            close_position(position, owner, exit_price, reason, now)

        await self.db.flush()
        return len(positions)


def get_competition_settler(
    db: AsyncSession,
    prices: PriceSource,
    effects: EffectRunner
) -> CompetitionSettler:
    return CompetitionSettler(db, prices, effects)
