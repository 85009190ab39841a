"""
Wallet models: CreditWallet, WalletTransaction, PlatformTransaction
Maps to: credit_wallets, wallet_transactions, platform_transactions tables
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

class TransactionType(str, Enum):
    COMPETITION_PRIZE = "competition_prize"
    COMPETITION_REFUND = "competition_refund"
    CHALLENGE_PRIZE = "challenge_prize"
    CHALLENGE_REFUND = "challenge_refund"


class PlatformTransactionType(str, Enum):
    COMPETITION_PLATFORM_FEE = "competition_platform_fee"
    COMPETITION_UNCLAIMED_POOL = "competition_unclaimed_pool"
    CHALLENGE_PLATFORM_FEE = "challenge_platform_fee"
    CHALLENGE_UNCLAIMED_POOL = "challenge_unclaimed_pool"


# ============================================================================
# CREDIT WALLET MODEL
# ============================================================================

class CreditWallet(SQLModel, table=True):
    """User's credit wallet (created on first credit if absent)"""
    __tablename__ = "credit_wallets"

    user_id: UUID = Field(primary_key=True)
    balance: float = Field(default=0)            # DECIMAL(18,2)
    total_won: float = Field(default=0)
    total_refunded: float = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# WALLET TRANSACTION MODEL
# ============================================================================

class WalletTransaction(SQLModel, table=True):
    """Individual wallet credit record, one per prize or refund"""
    __tablename__ = "wallet_transactions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(index=True)

    type: str = Field(max_length=50)     # TransactionType
    amount: float                         # DECIMAL(18,2), positive
    balance_after: float

    description: Optional[str] = None
    reference_id: Optional[UUID] = Field(default=None, index=True)  # competition or challenge id
    details: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))

    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# PLATFORM TRANSACTION MODEL
# ============================================================================

class PlatformTransaction(SQLModel, table=True):
    """Platform revenue record: fees and unclaimed prize shares"""
    __tablename__ = "platform_transactions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    type: str = Field(max_length=50)     # PlatformTransactionType
    amount: float
    source_type: str = Field(max_length=20)   # competition | challenge
    source_id: UUID = Field(index=True)
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
