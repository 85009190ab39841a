"""
1v1 challenge models: Challenge, ChallengeParticipant
Maps to: challenges, challenge_participants tables
"""

from sqlmodel import Field, SQLModel
from typing import Optional
from datetime import datetime
from uuid import UUID, uuid4
from enum import Enum

from chartvolt.core.clock import utcnow
from chartvolt.models.competition import ParticipantBase, RankingMethod


class ChallengeStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    DECLINED = "declined"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ChallengeRole(str, Enum):
    CHALLENGER = "challenger"
    CHALLENGED = "challenged"


class TiePolicy(str, Enum):
    REFUND = "refund"        # both entry fees returned, no platform fee
    SPLIT_POT = "split_pot"  # winner prize split evenly, platform fee retained


CHALLENGE_TRANSITIONS: dict[ChallengeStatus, frozenset[ChallengeStatus]] = {
    ChallengeStatus.PENDING: frozenset({
        ChallengeStatus.ACTIVE,
        ChallengeStatus.DECLINED,
        ChallengeStatus.EXPIRED,
        ChallengeStatus.CANCELLED,
    }),
    ChallengeStatus.ACTIVE: frozenset({ChallengeStatus.COMPLETED, ChallengeStatus.CANCELLED}),
    ChallengeStatus.COMPLETED: frozenset(),
    ChallengeStatus.DECLINED: frozenset(),
    ChallengeStatus.EXPIRED: frozenset(),
    ChallengeStatus.CANCELLED: frozenset(),
}


def can_transition_challenge(current: str, target: ChallengeStatus) -> bool:
    """Raises ValueError for a status string outside ChallengeStatus."""
    return target in CHALLENGE_TRANSITIONS[ChallengeStatus(current)]


class Challenge(SQLModel, table=True):
    """Head-to-head trading challenge between two users"""
    __tablename__ = "challenges"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    status: str = Field(default=ChallengeStatus.PENDING.value, max_length=20, index=True)

    challenger_id: UUID = Field(index=True)
    challenged_id: UUID = Field(index=True)

    entry_fee: float = Field(default=0)                # DECIMAL(10,2), per side
    prize_pool: float = Field(default=0)               # entry_fee * 2
    platform_fee_percentage: float = Field(default=10)
    platform_fee_amount: float = Field(default=0)
    winner_prize: float = Field(default=0)             # prize_pool - platform_fee_amount
    starting_capital: float = Field(default=10000)

    duration_minutes: int = Field(default=60, ge=1)
    accept_deadline: datetime
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = Field(default=None, index=True)

    ranking_method: str = Field(default=RankingMethod.PNL.value, max_length=30)
    minimum_trades: int = Field(default=1, ge=0)
    disqualify_on_liquidation: bool = Field(default=True)

    # Settlement results
    winner_id: Optional[UUID] = None
    loser_id: Optional[UUID] = None
    is_tie: bool = Field(default=False)
    both_disqualified: bool = Field(default=False)
    platform_fee_earned: float = Field(default=0)
    unclaimed_pool: float = Field(default=0)
    total_refunded: float = Field(default=0)
    challenger_final_metric: Optional[float] = None
    challenged_final_metric: Optional[float] = None

    settlement_locked_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ChallengeParticipant(ParticipantBase, table=True):
    """One side of a challenge"""
    __tablename__ = "challenge_participants"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    challenge_id: UUID = Field(foreign_key="challenges.id", index=True)
    role: str = Field(max_length=20)   # challenger | challenged
