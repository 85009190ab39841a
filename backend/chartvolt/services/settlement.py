"""
Settlement Engine

Pure computation of how a competition or challenge closes out: who wins,
who is disqualified, which ledger credits to write, what the platform keeps
and which notifications to send. Nothing here touches the database; the
settlers in competition_settler / challenge_settler apply the plan inside a
single transaction.

Money is Decimal quantised to cents. Every division rounds down and the
remainder lands in the unclaimed pool, so for every plan:

    credited + refunded + platform fee + unclaimed pool == total collected
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from typing import Optional, Sequence
from uuid import UUID
import math

from chartvolt.core.config import settings
from chartvolt.core.exceptions import ConfigurationError, IntegrityViolation
from chartvolt.models.challenge import Challenge, ChallengeParticipant, TiePolicy
from chartvolt.models.competition import (
    Competition,
    CompetitionParticipant,
    ParticipantBase,
    ParticipantStatus,
)
from chartvolt.models.wallet import PlatformTransactionType, TransactionType
from chartvolt.services.effects import BadgeEvaluation, Effect, Notification, XPAward
from chartvolt.services.ranking import coerce_method, extract_metric, sort_participants

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
PODIUM_RANKS = 3


# ============================================================================
# MONEY HELPERS
# ============================================================================

def to_money(value) -> Decimal:
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise IntegrityViolation(f"Not a monetary amount: {value!r}")


def percentage_of(amount: Decimal, percentage: Decimal) -> Decimal:
    """amount * percentage / 100, rounded down to the cent"""
    return (amount * percentage / HUNDRED).quantize(CENT, rounding=ROUND_DOWN)


def _fee_percentage(value) -> Decimal:
    pct = Decimal(str(value or 0))
    if pct < 0 or pct > HUNDRED:
        raise IntegrityViolation(f"Platform fee percentage out of range: {value}")
    return pct


def validate_prize_distribution(distribution) -> list[tuple[int, Decimal]]:
    """
    Parse [{"rank": 1, "percentage": 60}, ...] into (rank, percentage) pairs
    sorted by rank. Raises IntegrityViolation for anything that could pay out
    more than the pool or pay the same rank twice.
    """
    if not isinstance(distribution, (list, tuple)):
        raise IntegrityViolation(f"Prize distribution must be a list, got {type(distribution).__name__}")

    entries = []
    seen_ranks = set()
    for entry in distribution:
        try:
            rank = int(entry["rank"])
            pct = Decimal(str(entry["percentage"]))
        except (KeyError, TypeError, ValueError, InvalidOperation):
            raise IntegrityViolation(f"Malformed prize distribution entry: {entry!r}")
        if rank < 1:
            raise IntegrityViolation(f"Prize rank must be >= 1, got {rank}")
        if pct < 0:
            raise IntegrityViolation(f"Negative prize percentage for rank {rank}: {pct}")
        if rank in seen_ranks:
            raise IntegrityViolation(f"Duplicate prize rank {rank}")
        seen_ranks.add(rank)
        entries.append((rank, pct))

    total = sum((pct for _, pct in entries), Decimal("0"))
    if total > HUNDRED:
        raise IntegrityViolation(f"Prize distribution sums to {total}% (> 100%)")

    return sorted(entries)


# ============================================================================
# PLAN TYPES
# ============================================================================

@dataclass
class XPRewards:
    competition_win: int = 500
    competition_podium: int = 250
    competition_participation: int = 50
    challenge_win: int = 100

    @classmethod
    def from_settings(cls) -> "XPRewards":
        return cls(
            competition_win=settings.XP_COMPETITION_WIN,
            competition_podium=settings.XP_COMPETITION_PODIUM,
            competition_participation=settings.XP_COMPETITION_PARTICIPATION,
            challenge_win=settings.XP_CHALLENGE_WIN,
        )


@dataclass
class Credit:
    """A wallet credit to apply: prize or refund"""
    user_id: UUID
    participant_id: UUID
    amount: Decimal
    type: TransactionType
    description: str
    details: dict = field(default_factory=dict)


@dataclass
class PlatformCredit:
    type: PlatformTransactionType
    amount: Decimal
    description: str


@dataclass
class Winner:
    user_id: UUID
    participant_id: UUID
    rank: int
    percentage: Decimal
    amount: Decimal
    final_pnl: float
    metric_value: float

    def to_dict(self) -> dict:
        return {
            "user_id": str(self.user_id),
            "participant_id": str(self.participant_id),
            "rank": self.rank,
            "percentage": float(self.percentage),
            "amount": float(self.amount),
            "final_pnl": self.final_pnl,
            "metric_value": self.metric_value,
        }


@dataclass
class DisqualifiedEntry:
    user_id: UUID
    participant_id: UUID
    reason: str

    def to_dict(self) -> dict:
        return {
            "user_id": str(self.user_id),
            "participant_id": str(self.participant_id),
            "reason": self.reason,
        }


@dataclass
class UnclaimedSlot:
    rank: int
    percentage: Decimal
    amount: Decimal
    reason: str  # disqualified | insufficient_participants


@dataclass
class ParticipantUpdate:
    final_rank: Optional[int] = None
    prize_amount: Decimal = Decimal("0")
    disqualification_reason: Optional[str] = None


@dataclass
class CompetitionSettlement:
    competition_id: UUID
    total_collected: Decimal
    platform_fee: Decimal
    net_prize_pool: Decimal
    unclaimed_pool: Decimal
    winners: list[Winner] = field(default_factory=list)
    disqualified: list[DisqualifiedEntry] = field(default_factory=list)
    unclaimed_slots: list[UnclaimedSlot] = field(default_factory=list)
    leaderboard: list[dict] = field(default_factory=list)
    participant_updates: dict[UUID, ParticipantUpdate] = field(default_factory=dict)
    credits: list[Credit] = field(default_factory=list)
    platform_credits: list[PlatformCredit] = field(default_factory=list)
    effects: list[Effect] = field(default_factory=list)
    winner_id: Optional[UUID] = None

    @property
    def total_distributed(self) -> Decimal:
        return sum((c.amount for c in self.credits), Decimal("0"))

    def summary(self) -> dict:
        return {
            "competition_id": str(self.competition_id),
            "status": "completed",
            "total_collected": float(self.total_collected),
            "platform_fee_earned": float(self.platform_fee),
            "total_distributed": float(self.total_distributed),
            "unclaimed_pool": float(self.unclaimed_pool),
            "winners": [w.to_dict() for w in self.winners],
            "disqualified": [d.to_dict() for d in self.disqualified],
        }


@dataclass
class CancellationSettlement:
    competition_id: UUID
    reason: str
    total_collected: Decimal
    credits: list[Credit] = field(default_factory=list)
    effects: list[Effect] = field(default_factory=list)
    platform_fee: Decimal = Decimal("0")

    @property
    def total_refunded(self) -> Decimal:
        return sum((c.amount for c in self.credits), Decimal("0"))

    def summary(self) -> dict:
        return {
            "competition_id": str(self.competition_id),
            "status": "cancelled",
            "reason": self.reason,
            "total_collected": float(self.total_collected),
            "total_refunded": float(self.total_refunded),
            "platform_fee_earned": float(self.platform_fee),
            "refunds": len(self.credits),
        }


@dataclass
class ChallengeSettlement:
    challenge_id: UUID
    outcome: str  # winner | tie | both_disqualified
    prize_pool: Decimal
    platform_fee: Decimal
    winner_prize: Decimal
    unclaimed_pool: Decimal
    is_tie: bool = False
    both_disqualified: bool = False
    winner_id: Optional[UUID] = None
    loser_id: Optional[UUID] = None
    challenger_metric: float = 0.0
    challenged_metric: float = 0.0
    participant_updates: dict[UUID, ParticipantUpdate] = field(default_factory=dict)
    credits: list[Credit] = field(default_factory=list)
    platform_credits: list[PlatformCredit] = field(default_factory=list)
    effects: list[Effect] = field(default_factory=list)

    @property
    def total_credited(self) -> Decimal:
        return sum((c.amount for c in self.credits), Decimal("0"))

    @property
    def total_refunded(self) -> Decimal:
        return sum(
            (c.amount for c in self.credits if c.type == TransactionType.CHALLENGE_REFUND),
            Decimal("0"),
        )

    def summary(self) -> dict:
        return {
            "challenge_id": str(self.challenge_id),
            "outcome": self.outcome,
            "winner_id": str(self.winner_id) if self.winner_id else None,
            "is_tie": self.is_tie,
            "both_disqualified": self.both_disqualified,
            "winner_prize": float(self.winner_prize),
            "platform_fee_earned": float(self.platform_fee),
            "unclaimed_pool": float(self.unclaimed_pool),
            "total_refunded": float(self.total_refunded),
        }


# ============================================================================
# ELIGIBILITY
# ============================================================================

def disqualification_reason(
    participant: ParticipantBase,
    minimum_trades: int,
    disqualify_on_liquidation: bool
) -> Optional[str]:
    """Why a non-withdrawn participant cannot win, or None if eligible"""
    status = ParticipantStatus(participant.status)

    if status == ParticipantStatus.DISQUALIFIED:
        return participant.disqualification_reason or "disqualified"
    elif status == ParticipantStatus.WITHDRAWN:
        return "withdrawn"
    elif status == ParticipantStatus.ACTIVE:
        if disqualify_on_liquidation and participant.liquidated_at is not None:
            return "liquidated"
        if participant.total_trades < minimum_trades:
            return "minimum_trades_not_met"
        return None
    raise ConfigurationError(f"Participant status not handled: {status}")


def partition_participants(
    participants: Sequence[ParticipantBase],
    minimum_trades: int,
    disqualify_on_liquidation: bool
) -> tuple[list, list[tuple[ParticipantBase, str]]]:
    """Split into (eligible, [(disqualified, reason)]). Withdrawn entrants are in neither."""
    eligible = []
    disqualified = []
    for participant in participants:
        if participant.status == ParticipantStatus.WITHDRAWN.value:
            continue
        reason = disqualification_reason(participant, minimum_trades, disqualify_on_liquidation)
        if reason is None:
            eligible.append(participant)
        else:
            disqualified.append((participant, reason))
    return eligible, disqualified


def _check_conservation(label: str, total: Decimal, *parts: Decimal) -> None:
    accounted = sum(parts, Decimal("0"))
    if accounted != total:
        raise IntegrityViolation(f"{label}: {accounted} accounted for but {total} collected")
    if any(part < 0 for part in parts):
        raise IntegrityViolation(f"{label}: negative settlement component in {parts}")


# ============================================================================
# COMPETITIONS
# ============================================================================

def plan_competition_settlement(
    competition: Competition,
    participants: Sequence[CompetitionParticipant],
    xp: Optional[XPRewards] = None
) -> CompetitionSettlement:
    """Compute winners, prize credits and platform revenue for a finished competition"""
    xp = xp or XPRewards()
    distribution = validate_prize_distribution(competition.prize_distribution)
    method = coerce_method(competition.ranking_method)

    total = to_money(competition.prize_pool)
    if total < 0:
        raise IntegrityViolation(f"Competition {competition.id} has a negative prize pool")
    fee = percentage_of(total, _fee_percentage(competition.platform_fee_percentage))
    net_pool = total - fee

    eligible, disqualified = partition_participants(
        participants, competition.minimum_trades, competition.disqualify_on_liquidation
    )
    ranked = sort_participants(
        method,
        eligible,
        [b for b in (competition.tie_breaker1, competition.tie_breaker2) if b],
    )

    plan = CompetitionSettlement(
        competition_id=competition.id,
        total_collected=total,
        platform_fee=fee,
        net_prize_pool=net_pool,
        unclaimed_pool=Decimal("0"),
    )

    for position, participant in enumerate(ranked, start=1):
        plan.participant_updates[participant.id] = ParticipantUpdate(final_rank=position)

    for rank, pct in distribution:
        amount = percentage_of(net_pool, pct)
        if rank > len(ranked):
            reason = "disqualified" if rank <= len(ranked) + len(disqualified) else "insufficient_participants"
            plan.unclaimed_slots.append(UnclaimedSlot(rank=rank, percentage=pct, amount=amount, reason=reason))
            continue

        participant = ranked[rank - 1]
        plan.winners.append(Winner(
            user_id=participant.user_id,
            participant_id=participant.id,
            rank=rank,
            percentage=pct,
            amount=amount,
            final_pnl=float(participant.pnl),
            metric_value=extract_metric(method, participant),
        ))
        plan.participant_updates[participant.id].prize_amount = amount
        if amount > 0:
            plan.credits.append(Credit(
                user_id=participant.user_id,
                participant_id=participant.id,
                amount=amount,
                type=TransactionType.COMPETITION_PRIZE,
                description=f"Prize for rank #{rank} in {competition.name}",
                details={"competition_id": str(competition.id), "rank": rank, "percentage": float(pct)},
            ))

    plan.unclaimed_pool = net_pool - plan.total_distributed
    _check_conservation(
        f"Competition {competition.id}", total, plan.total_distributed, fee, plan.unclaimed_pool
    )

    if plan.unclaimed_pool > 0:
        plan.platform_credits.append(PlatformCredit(
            type=PlatformTransactionType.COMPETITION_UNCLAIMED_POOL,
            amount=plan.unclaimed_pool,
            description=f"Unclaimed prize pool from {competition.name}",
        ))
    if fee > 0:
        plan.platform_credits.append(PlatformCredit(
            type=PlatformTransactionType.COMPETITION_PLATFORM_FEE,
            amount=fee,
            description=f"Platform fee from {competition.name}",
        ))

    for participant, reason in disqualified:
        plan.disqualified.append(DisqualifiedEntry(
            user_id=participant.user_id, participant_id=participant.id, reason=reason
        ))
        plan.participant_updates[participant.id] = ParticipantUpdate(disqualification_reason=reason)

    plan.winner_id = ranked[0].user_id if ranked else None
    plan.leaderboard = _leaderboard(method, ranked, disqualified, plan)
    plan.effects = _competition_effects(competition, ranked, disqualified, plan, xp)
    return plan


def _leaderboard(method, ranked, disqualified, plan: CompetitionSettlement) -> list[dict]:
    rows = []
    for position, participant in enumerate(ranked, start=1):
        rows.append({
            "rank": position,
            "user_id": str(participant.user_id),
            "participant_id": str(participant.id),
            "username": getattr(participant, "username", None),
            "metric_value": extract_metric(method, participant),
            "pnl": float(participant.pnl),
            "prize": float(plan.participant_updates[participant.id].prize_amount),
            "status": ParticipantStatus.ACTIVE.value,
        })
    for participant, reason in disqualified:
        rows.append({
            "rank": None,
            "user_id": str(participant.user_id),
            "participant_id": str(participant.id),
            "username": getattr(participant, "username", None),
            "metric_value": extract_metric(method, participant),
            "pnl": float(participant.pnl),
            "prize": 0.0,
            "status": ParticipantStatus.DISQUALIFIED.value,
            "reason": reason,
        })
    return rows


def _competition_effects(competition, ranked, disqualified, plan, xp: XPRewards) -> list[Effect]:
    effects: list[Effect] = []
    prizes = {w.participant_id: w for w in plan.winners}
    total_ranked = len(ranked)

    for position, participant in enumerate(ranked, start=1):
        variables = {
            "competitionName": competition.name,
            "competitionId": str(competition.id),
            "rank": position,
            "totalParticipants": total_ranked,
            "pnl": float(participant.pnl),
        }
        winner = prizes.get(participant.id)

        if position == 1:
            effects.append(Notification(participant.user_id, "competition_won", variables))
            effects.append(XPAward(participant.user_id, xp.competition_win, "competition_win"))
        elif position <= PODIUM_RANKS:
            effects.append(Notification(participant.user_id, "competition_podium", variables))
            effects.append(XPAward(participant.user_id, xp.competition_podium, "competition_podium"))
        else:
            effects.append(Notification(participant.user_id, "competition_ended", variables))

        if winner is not None and winner.amount > 0:
            effects.append(Notification(
                participant.user_id,
                "competition_prize",
                {**variables, "prizeAmount": float(winner.amount)},
            ))

        effects.append(XPAward(participant.user_id, xp.competition_participation, "competition_participation"))
        effects.append(BadgeEvaluation(participant.user_id, "competition_completed"))

    for participant, reason in disqualified:
        effects.append(Notification(participant.user_id, "competition_disqualified", {
            "competitionName": competition.name,
            "competitionId": str(competition.id),
            "reason": reason,
        }))
        effects.append(BadgeEvaluation(participant.user_id, "competition_completed"))

    return effects


def plan_competition_cancellation(
    competition: Competition,
    participants: Sequence[CompetitionParticipant],
    reason: str
) -> CancellationSettlement:
    """Full refund of every entry fee; the platform keeps nothing"""
    total = to_money(competition.prize_pool)
    plan = CancellationSettlement(competition_id=competition.id, reason=reason, total_collected=total)

    for participant in participants:
        amount = to_money(participant.entry_fee_paid)
        if amount < 0:
            raise IntegrityViolation(f"Participant {participant.id} has a negative entry fee")
        if amount > 0:
            plan.credits.append(Credit(
                user_id=participant.user_id,
                participant_id=participant.id,
                amount=amount,
                type=TransactionType.COMPETITION_REFUND,
                description=f"Refund for cancelled competition {competition.name}",
                details={"competition_id": str(competition.id), "reason": reason},
            ))
        plan.effects.append(Notification(participant.user_id, "competition_cancelled", {
            "competitionName": competition.name,
            "competitionId": str(competition.id),
            "reason": reason,
            "refundAmount": float(amount),
        }))

    _check_conservation(f"Cancellation of {competition.id}", total, plan.total_refunded)
    return plan


# ============================================================================
# CHALLENGES
# ============================================================================

def plan_challenge_settlement(
    challenge: Challenge,
    challenger: ChallengeParticipant,
    challenged: ChallengeParticipant,
    tie_policy: str | TiePolicy = TiePolicy.REFUND,
    xp: Optional[XPRewards] = None
) -> ChallengeSettlement:
    """Decide a finished 1v1 challenge: winner, tie or both disqualified"""
    xp = xp or XPRewards()
    method = coerce_method(challenge.ranking_method)
    try:
        tie_policy = TiePolicy(tie_policy)
    except ValueError:
        raise ConfigurationError(f"Unknown challenge tie policy: {tie_policy!r}")

    entry_fee = to_money(challenge.entry_fee)
    if entry_fee < 0:
        raise IntegrityViolation(f"Challenge {challenge.id} has a negative entry fee")
    pool = entry_fee * 2
    fee = percentage_of(pool, _fee_percentage(challenge.platform_fee_percentage))
    prize = pool - fee

    challenger_metric = extract_metric(method, challenger)
    challenged_metric = extract_metric(method, challenged)
    reasons = {
        p.id: disqualification_reason(p, challenge.minimum_trades, challenge.disqualify_on_liquidation)
        for p in (challenger, challenged)
    }
    base = {
        "challengeId": str(challenge.id),
        "rankingMethod": method.value,
        "challengerMetric": challenger_metric,
        "challengedMetric": challenged_metric,
    }

    def credit(participant, amount, tx_type, description):
        plan.credits.append(Credit(
            user_id=participant.user_id,
            participant_id=participant.id,
            amount=amount,
            type=tx_type,
            description=description,
            details={"challenge_id": str(challenge.id)},
        ))

    both_out = reasons[challenger.id] is not None and reasons[challenged.id] is not None
    if both_out:
        plan = ChallengeSettlement(
            challenge_id=challenge.id,
            outcome="both_disqualified",
            prize_pool=pool,
            platform_fee=fee,
            winner_prize=Decimal("0"),
            unclaimed_pool=prize,
            both_disqualified=True,
            challenger_metric=challenger_metric,
            challenged_metric=challenged_metric,
        )
        for participant in (challenger, challenged):
            plan.participant_updates[participant.id] = ParticipantUpdate(
                disqualification_reason=reasons[participant.id]
            )
            plan.effects.append(Notification(participant.user_id, "challenge_disqualified", {
                **base, "reason": reasons[participant.id],
            }))

    elif reasons[challenger.id] is None and reasons[challenged.id] is None and math.isclose(
        challenger_metric, challenged_metric, rel_tol=0.0, abs_tol=1e-9
    ):
        if tie_policy == TiePolicy.REFUND:
            plan = ChallengeSettlement(
                challenge_id=challenge.id,
                outcome="tie",
                prize_pool=pool,
                platform_fee=Decimal("0"),
                winner_prize=Decimal("0"),
                unclaimed_pool=Decimal("0"),
                is_tie=True,
                challenger_metric=challenger_metric,
                challenged_metric=challenged_metric,
            )
            for participant in (challenger, challenged):
                if entry_fee > 0:
                    credit(participant, entry_fee, TransactionType.CHALLENGE_REFUND, "Challenge tie: entry fee refunded")
        elif tie_policy == TiePolicy.SPLIT_POT:
            half = (prize / 2).quantize(CENT, rounding=ROUND_DOWN)
            plan = ChallengeSettlement(
                challenge_id=challenge.id,
                outcome="tie",
                prize_pool=pool,
                platform_fee=fee,
                winner_prize=half,
                unclaimed_pool=prize - half * 2,
                is_tie=True,
                challenger_metric=challenger_metric,
                challenged_metric=challenged_metric,
            )
            for participant in (challenger, challenged):
                if half > 0:
                    credit(participant, half, TransactionType.CHALLENGE_PRIZE, "Challenge tie: prize split")
        else:
            raise ConfigurationError(f"Tie policy not handled: {tie_policy}")

        for participant in (challenger, challenged):
            plan.participant_updates[participant.id] = ParticipantUpdate(
                final_rank=1, prize_amount=plan.winner_prize
            )
            plan.effects.append(Notification(participant.user_id, "challenge_tie", {
                **base, "tiePolicy": tie_policy.value,
            }))

    else:
        if reasons[challenger.id] is not None:
            winner, loser = challenged, challenger
        elif reasons[challenged.id] is not None:
            winner, loser = challenger, challenged
        elif challenger_metric > challenged_metric:
            winner, loser = challenger, challenged
        else:
            winner, loser = challenged, challenger

        plan = ChallengeSettlement(
            challenge_id=challenge.id,
            outcome="winner",
            prize_pool=pool,
            platform_fee=fee,
            winner_prize=prize,
            unclaimed_pool=Decimal("0"),
            winner_id=winner.user_id,
            loser_id=loser.user_id,
            challenger_metric=challenger_metric,
            challenged_metric=challenged_metric,
        )
        if prize > 0:
            credit(winner, prize, TransactionType.CHALLENGE_PRIZE, "Challenge won")

        plan.participant_updates[winner.id] = ParticipantUpdate(final_rank=1, prize_amount=prize)
        plan.participant_updates[loser.id] = ParticipantUpdate(
            final_rank=2, disqualification_reason=reasons[loser.id]
        )
        plan.effects.append(Notification(winner.user_id, "challenge_won", {
            **base, "prize": float(prize), "byDefault": reasons[loser.id] is not None,
        }))
        plan.effects.append(XPAward(winner.user_id, xp.challenge_win, "challenge_win"))
        if reasons[loser.id] is not None:
            plan.effects.append(Notification(loser.user_id, "challenge_disqualified", {
                **base, "reason": reasons[loser.id],
            }))
        else:
            plan.effects.append(Notification(loser.user_id, "challenge_lost", base))

    if plan.platform_fee > 0:
        plan.platform_credits.append(PlatformCredit(
            type=PlatformTransactionType.CHALLENGE_PLATFORM_FEE,
            amount=plan.platform_fee,
            description=f"Platform fee from challenge {challenge.id}",
        ))
    if plan.unclaimed_pool > 0:
        plan.platform_credits.append(PlatformCredit(
            type=PlatformTransactionType.CHALLENGE_UNCLAIMED_POOL,
            amount=plan.unclaimed_pool,
            description=f"Unclaimed pool from challenge {challenge.id}",
        ))
    for participant in (challenger, challenged):
        plan.effects.append(BadgeEvaluation(participant.user_id, "challenge_completed"))

    _check_conservation(
        f"Challenge {challenge.id}", pool, plan.total_credited, plan.platform_fee, plan.unclaimed_pool
    )
    return plan
