"""
Ledger writes for settlement.

Every user credit is a CreditWallet balance change paired with a
WalletTransaction; every platform revenue line is a PlatformTransaction.
Callers own the surrounding transaction.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chartvolt.core.clock import utcnow
from chartvolt.core.exceptions import IntegrityViolation
from chartvolt.models.wallet import (
    CreditWallet,
    PlatformTransaction,
    PlatformTransactionType,
    TransactionType,
    WalletTransaction,
)

logger = logging.getLogger(__name__)

REFUND_TYPES = {TransactionType.COMPETITION_REFUND, TransactionType.CHALLENGE_REFUND}


async def credit_wallet(
    db: AsyncSession,
    user_id: UUID,
    amount: Decimal,
    transaction_type: TransactionType,
    reference_id: UUID,
    description: str,
    details: Optional[dict] = None
) -> WalletTransaction:
    """Credit a user's wallet and record the transaction"""
    if amount <= 0:
        raise IntegrityViolation(f"Refusing non-positive credit of {amount} to user {user_id}")

    stmt = select(CreditWallet).where(CreditWallet.user_id == user_id)
    result = await db.execute(stmt)
    wallet = result.scalar_one_or_none()

    if wallet is None:
        wallet = CreditWallet(user_id=user_id)
        db.add(wallet)

    balance_after = Decimal(str(wallet.balance)) + amount
    wallet.balance = float(balance_after)
    if transaction_type in REFUND_TYPES:
        wallet.total_refunded = float(Decimal(str(wallet.total_refunded)) + amount)
    else:
        wallet.total_won = float(Decimal(str(wallet.total_won)) + amount)
    wallet.updated_at = utcnow()

    wallet_tx = WalletTransaction(
        user_id=user_id,
        type=transaction_type.value,
        amount=float(amount),
        balance_after=float(balance_after),
        reference_id=reference_id,
        description=description,
        details=details,
    )
    db.add(wallet_tx)
    return wallet_tx


async def record_platform_transaction(
    db: AsyncSession,
    transaction_type: PlatformTransactionType,
    amount: Decimal,
    source_type: str,
    source_id: UUID,
    description: str
) -> Optional[PlatformTransaction]:
    """Record platform revenue; zero amounts are not recorded"""
    if amount < 0:
        raise IntegrityViolation(f"Negative platform amount {amount} for {source_type} {source_id}")
    if amount == 0:
        return None

    platform_tx = PlatformTransaction(
        type=transaction_type.value,
        amount=float(amount),
        source_type=source_type,
        source_id=source_id,
        description=description,
    )
    db.add(platform_tx)
    return platform_tx
