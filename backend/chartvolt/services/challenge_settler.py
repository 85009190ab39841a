"""
Challenge lifecycle service

    pending -> expired    (expire_challenge, accept deadline passed)
    active  -> completed  (finalize_challenge, end time reached)

Entry fees are debited from both players when the challenge is accepted,
so an expired challenge moves no money.
"""

from typing import Optional
from uuid import UUID
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chartvolt.core.clock import utcnow
from chartvolt.core.config import settings
from chartvolt.core.exceptions import EntityNotFound, IntegrityViolation
from chartvolt.models.challenge import (
    Challenge,
    ChallengeParticipant,
    ChallengeRole,
    ChallengeStatus,
    can_transition_challenge,
)
from chartvolt.models.competition import ParticipantStatus
from chartvolt.models.position import CloseReason, PositionStatus, TradingPosition
from chartvolt.services.effects import EffectRunner, Notification
from chartvolt.services.ledger import credit_wallet, record_platform_transaction
from chartvolt.services.positions import close_position, fallback_exit_price, mark_price
from chartvolt.services.prices import PriceSource
from chartvolt.services.settlement import ChallengeSettlement, XPRewards, plan_challenge_settlement

logger = logging.getLogger(__name__)


async def due_to_expire(db: AsyncSession, now) -> list[UUID]:
    stmt = select(Challenge.id).where(
        Challenge.status == ChallengeStatus.PENDING.value,
        Challenge.accept_deadline <= now,
    ).order_by(Challenge.accept_deadline)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def due_to_finalize(db: AsyncSession, now) -> list[UUID]:
    stmt = select(Challenge.id).where(
        Challenge.status == ChallengeStatus.ACTIVE.value,
        Challenge.end_time <= now,
    ).order_by(Challenge.end_time)
    result = await db.execute(stmt)
    return list(result.scalars().all())


class ChallengeSettler:
    """Applies settlement plans for one challenge at a time"""

    def __init__(
        self,
        db: AsyncSession,
        prices: PriceSource,
        effects: EffectRunner,
        tie_policy: Optional[str] = None,
        mark_convention: Optional[str] = None,
        xp: Optional[XPRewards] = None
    ):
        self.db = db
        self.prices = prices
        self.effects = effects
        self.tie_policy = tie_policy or settings.CHALLENGE_TIE_POLICY
        self.mark_convention = mark_convention or settings.MARK_PRICE_CONVENTION
        self.xp = xp or XPRewards.from_settings()

    async def finalize_challenge(self, challenge_id: UUID) -> Optional[ChallengeSettlement]:
        """Settle an active challenge whose end time has passed; None if already settled"""
        async with self.db.begin():
            challenge = await self.db.get(Challenge, challenge_id)
            if challenge is None:
                raise EntityNotFound(f"Challenge {challenge_id} not found")
            stmt = select(TradingPosition.symbol).where(
                TradingPosition.competition_id == challenge_id,
                TradingPosition.status == PositionStatus.OPEN.value,
            ).distinct()
            symbols = list((await self.db.execute(stmt)).scalars().all())

        quotes = await self.prices.fetch_prices(symbols)

        async with self.db.begin():
            now = utcnow()
            stmt = (
                update(Challenge)
                .where(
                    Challenge.id == challenge_id,
                    Challenge.status == ChallengeStatus.ACTIVE.value,
                    Challenge.settled_at.is_(None),
                    Challenge.end_time <= now,
                )
                .values(settlement_locked_at=now)
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            if result.rowcount != 1:
                logger.info(f"Challenge {challenge_id} not claimable for settlement, skipping")
                return None

            challenge = await self.db.get(Challenge, challenge_id, populate_existing=True)
            challenger, challenged = await self._sides(challenge)

            stmt = (
                select(TradingPosition)
                .where(
                    TradingPosition.competition_id == challenge_id,
                    TradingPosition.status == PositionStatus.OPEN.value,
                )
                .order_by(TradingPosition.opened_at, TradingPosition.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            owners = {challenger.id: challenger, challenged.id: challenged}
            for position in (await self.db.execute(stmt)).scalars().all():
                owner = owners.get(position.participant_id)
                if owner is None:
                    raise IntegrityViolation(
                        f"Open position {position.id} in challenge {challenge_id} has no owner"
                    )
                quote = quotes.get(position.symbol.upper())
                if quote is not None:
                    exit_price = mark_price(position.side, quote, self.mark_convention)
                else:
                    exit_price = fallback_exit_price(position)
                    logger.warning(
                        f"No quote for {position.symbol}, closing position {position.id} at last price {exit_price}"
                    )
                close_position(position, owner, exit_price, CloseReason.CHALLENGE_END, now)
            await self.db.flush()

            plan = plan_challenge_settlement(challenge, challenger, challenged, self.tie_policy, self.xp)
            await self._apply(challenge, (challenger, challenged), plan, now)

        logger.info(
            f"Challenge {challenge_id} completed: outcome={plan.outcome} "
            f"winner={plan.winner_id} prize={plan.winner_prize} fee={plan.platform_fee} "
            f"unclaimed={plan.unclaimed_pool}"
        )
        await self.effects.run(plan.effects)
        return plan

    async def expire_challenge(self, challenge_id: UUID) -> bool:
        """Expire a pending challenge past its accept deadline"""
        async with self.db.begin():
            now = utcnow()
            stmt = (
                update(Challenge)
                .where(
                    Challenge.id == challenge_id,
                    Challenge.status == ChallengeStatus.PENDING.value,
                    Challenge.accept_deadline <= now,
                )
                .values(status=ChallengeStatus.EXPIRED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            if result.rowcount != 1:
                return False
            challenge = await self.db.get(Challenge, challenge_id, populate_existing=True)

        logger.info(f"Challenge {challenge_id} expired without acceptance")
        await self.effects.run([
            Notification(challenge.challenger_id, "challenge_expired", {
                "challengeId": str(challenge_id),
                "challengedId": str(challenge.challenged_id),
            })
        ])
        return True

    async def _sides(self, challenge: Challenge) -> tuple[ChallengeParticipant, ChallengeParticipant]:
        stmt = (
            select(ChallengeParticipant)
            .where(ChallengeParticipant.challenge_id == challenge.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        participants = (await self.db.execute(stmt)).scalars().all()
        by_role = {p.role: p for p in participants}

        challenger = by_role.get(ChallengeRole.CHALLENGER.value)
        challenged = by_role.get(ChallengeRole.CHALLENGED.value)
        if len(participants) != 2 or challenger is None or challenged is None:
            raise IntegrityViolation(
                f"Challenge {challenge.id} needs one challenger and one challenged participant, "
                f"found roles {sorted(p.role for p in participants)}"
            )
        return challenger, challenged

    async def _apply(self, challenge: Challenge, participants, plan: ChallengeSettlement, now) -> None:
        if not can_transition_challenge(challenge.status, ChallengeStatus.COMPLETED):
            raise IntegrityViolation(
                f"Challenge {challenge.id} cannot move from {challenge.status} to completed"
            )

        for credit in plan.credits:
            await credit_wallet(
                self.db,
                credit.user_id,
                credit.amount,
                credit.type,
                reference_id=challenge.id,
                description=credit.description,
                details=credit.details,
            )
        for platform_credit in plan.platform_credits:
            await record_platform_transaction(
                self.db,
                platform_credit.type,
                platform_credit.amount,
                "challenge",
                challenge.id,
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

        challenge.winner_id = plan.winner_id
        challenge.loser_id = plan.loser_id
        challenge.is_tie = plan.is_tie
        challenge.both_disqualified = plan.both_disqualified
        challenge.winner_prize = float(plan.winner_prize)
        challenge.platform_fee_amount = float(plan.platform_fee)
        challenge.platform_fee_earned = float(plan.platform_fee)
        challenge.unclaimed_pool = float(plan.unclaimed_pool)
        challenge.total_refunded = float(plan.total_refunded)
        challenge.challenger_final_metric = plan.challenger_metric
        challenge.challenged_final_metric = plan.challenged_metric
        challenge.settled_at = now
        challenge.updated_at = now
        challenge.status = ChallengeStatus.COMPLETED.value
        await self.db.flush()
