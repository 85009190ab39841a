"""
Trading position model
Maps to: trading_positions table
"""

from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from uuid import UUID, uuid4
from enum import Enum

from chartvolt.core.clock import utcnow


# ============================================================================
# ENUMS
# ============================================================================

class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class CloseReason(str, Enum):
    USER = "user"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    MARGIN_CALL = "margin_call"
    COMPETITION_END = "competition_end"
    COMPETITION_CANCELLED = "competition_cancelled"
    CHALLENGE_END = "challenge_end"


# ============================================================================
# TRADING POSITION MODEL
# ============================================================================

class TradingPosition(SQLModel, table=True):
    """A leveraged position held by one competition or challenge participant"""
    __tablename__ = "trading_positions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    # Competition or challenge id; participant_id points into the matching participants table
    competition_id: UUID = Field(index=True)
    participant_id: UUID = Field(index=True)
    user_id: UUID = Field(index=True)

    symbol: str = Field(max_length=20)
    side: str = Field(max_length=10)
    status: str = Field(default=PositionStatus.OPEN.value, max_length=10, index=True)

    quantity: float                                  # lots
    contract_size: float = Field(default=100000)     # units per lot
    entry_price: float
    current_price: Optional[float] = None            # last mark written by the trading service
    margin_used: float = Field(default=0)            # DECIMAL(18,2)

    exit_price: Optional[float] = None
    realized_pnl: Optional[float] = None
    close_reason: Optional[str] = Field(default=None, max_length=30)

    opened_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
