"""
Competition models: Competition, CompetitionParticipant
Maps to: competitions, competition_participants tables
"""

from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from uuid import UUID, uuid4
from enum import Enum

from chartvolt.core.clock import utcnow


# ============================================================================
# ENUMS
# ============================================================================

class CompetitionStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ParticipantStatus(str, Enum):
    ACTIVE = "active"
    DISQUALIFIED = "disqualified"
    WITHDRAWN = "withdrawn"


class RankingMethod(str, Enum):
    PNL = "pnl"
    ROI = "roi"
    TOTAL_CAPITAL = "total_capital"
    WIN_RATE = "win_rate"
    TOTAL_WINS = "total_wins"
    PROFIT_FACTOR = "profit_factor"


class TieBreaker(str, Enum):
    TRADES_COUNT = "trades_count"
    WIN_RATE = "win_rate"
    TOTAL_CAPITAL = "total_capital"
    ROI = "roi"
    JOIN_TIME = "join_time"


COMPETITION_TRANSITIONS: dict[CompetitionStatus, frozenset[CompetitionStatus]] = {
    CompetitionStatus.UPCOMING: frozenset({CompetitionStatus.ACTIVE, CompetitionStatus.CANCELLED}),
    CompetitionStatus.ACTIVE: frozenset({CompetitionStatus.COMPLETED, CompetitionStatus.CANCELLED}),
    CompetitionStatus.COMPLETED: frozenset(),
    CompetitionStatus.CANCELLED: frozenset(),
}


def can_transition(current: str, target: CompetitionStatus) -> bool:
    """Raises ValueError for a status string outside CompetitionStatus."""
    return target in COMPETITION_TRANSITIONS[CompetitionStatus(current)]


# ============================================================================
# SHARED PARTICIPANT FIELDS
# ============================================================================

class ParticipantBase(SQLModel):
    """Trading statistics shared by competition and challenge participants"""
    user_id: UUID = Field(index=True)
    status: str = Field(default=ParticipantStatus.ACTIVE.value, max_length=20)

    starting_capital: float = Field(default=0)      # DECIMAL(18,2)
    current_capital: float = Field(default=0)       # DECIMAL(18,2)
    used_margin: float = Field(default=0)           # DECIMAL(18,2)
    current_open_positions: int = Field(default=0, ge=0)

    pnl: float = Field(default=0)                   # realized, DECIMAL(18,2)
    pnl_percentage: float = Field(default=0)
    total_trades: int = Field(default=0)
    winning_trades: int = Field(default=0)
    losing_trades: int = Field(default=0)
    gross_profit: float = Field(default=0)
    gross_loss: float = Field(default=0)            # stored positive

    entry_fee_paid: float = Field(default=0)        # DECIMAL(10,2)
    entered_at: datetime = Field(default_factory=utcnow)

    liquidated_at: Optional[datetime] = None
    liquidation_reason: Optional[str] = None
    disqualification_reason: Optional[str] = None

    final_rank: Optional[int] = None
    prize_amount: float = Field(default=0)


# ============================================================================
# COMPETITION MODEL
# ============================================================================

class Competition(SQLModel, table=True):
    """Multi-participant trading competition with a ranked prize distribution"""
    __tablename__ = "competitions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(index=True, max_length=200)
    description: Optional[str] = None
    status: str = Field(default=CompetitionStatus.UPCOMING.value, max_length=20, index=True)

    start_time: datetime
    end_time: datetime = Field(index=True)

    entry_fee: float = Field(default=0)               # DECIMAL(10,2)
    prize_pool: float = Field(default=0)              # gross entry fees collected
    platform_fee_percentage: float = Field(default=0)
    starting_capital: float = Field(default=10000)

    ranking_method: str = Field(default=RankingMethod.PNL.value, max_length=30)
    tie_breaker1: Optional[str] = Field(default=None, max_length=30)
    tie_breaker2: Optional[str] = Field(default=None, max_length=30)
    # [{"rank": 1, "percentage": 60}, ...]
    prize_distribution: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    minimum_trades: int = Field(default=0, ge=0)
    min_participants: int = Field(default=2, ge=1)
    max_participants: Optional[int] = Field(default=None, ge=1)
    current_participants: int = Field(default=0, ge=0)
    # {"warning": 150, "margin_call": 100, "liquidation": 50}
    risk_limits: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    disqualify_on_liquidation: bool = Field(default=True)

    # Settlement results
    total_collected: float = Field(default=0)
    net_prize_pool: float = Field(default=0)
    total_distributed: float = Field(default=0)
    total_refunded: float = Field(default=0)
    platform_fee_earned: float = Field(default=0)
    unclaimed_pool: float = Field(default=0)
    winners: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    disqualified: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    final_leaderboard: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    winner_id: Optional[UUID] = None
    cancellation_reason: Optional[str] = None

    # Idempotency gate: conditional UPDATE on status and settled_at
    settlement_locked_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CompetitionParticipant(ParticipantBase, table=True):
    """A user's entry in a competition"""
    __tablename__ = "competition_participants"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    competition_id: UUID = Field(foreign_key="competitions.id", index=True)
    username: Optional[str] = Field(default=None, max_length=100)


# ============================================================================
# API SCHEMAS
# ============================================================================

class CancelCompetitionRequest(SQLModel):
    """Admin cancellation request"""
    reason: str = Field(min_length=1, max_length=500)


class CompetitionSettlementResponse(SQLModel):
    """Persisted settlement totals for a competition"""
    id: UUID
    status: str
    total_collected: float
    net_prize_pool: float
    total_distributed: float
    total_refunded: float
    platform_fee_earned: float
    unclaimed_pool: float
    winners: list
    disqualified: list
    final_leaderboard: list
    cancellation_reason: Optional[str] = None
    settled_at: Optional[datetime] = None
