"""
Position valuation and forced closure.

Shared by the liquidation sweep (close_reason=margin_call) and by settlement
(close_reason=competition_end / challenge_end).
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime
from typing import Optional
import logging

from chartvolt.core.clock import utcnow
from chartvolt.core.exceptions import ConfigurationError
from chartvolt.models.competition import ParticipantBase
from chartvolt.models.position import CloseReason, PositionSide, PositionStatus, TradingPosition
from chartvolt.services.prices import Quote

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def mark_price(side: str, quote: Quote, convention: str = "exit_side") -> float:
    """
    Price a position would exit at.
    exit_side: long sells at the bid, short buys back at the ask
    mid: (bid + ask) / 2 for both sides
    """
    if convention == "mid":
        return quote.mid
    elif convention == "exit_side":
        if side == PositionSide.LONG.value:
            return quote.bid
        elif side == PositionSide.SHORT.value:
            return quote.ask
        raise ConfigurationError(f"Unknown position side: {side!r}")
    raise ConfigurationError(f"Unknown mark price convention: {convention!r}")


def calculate_pnl(position: TradingPosition, price: float) -> Decimal:
    entry = Decimal(str(position.entry_price))
    mark = Decimal(str(price))
    units = Decimal(str(position.quantity)) * Decimal(str(position.contract_size))

    if position.side == PositionSide.LONG.value:
        diff = mark - entry
    elif position.side == PositionSide.SHORT.value:
        diff = entry - mark
    else:
        raise ConfigurationError(f"Unknown position side: {position.side!r}")

    return (diff * units).quantize(CENT, rounding=ROUND_HALF_UP)


def fallback_exit_price(position: TradingPosition) -> float:
    """Last mark written by the trading service, else the entry price"""
    return position.current_price if position.current_price else position.entry_price


def apply_realized_pnl(participant: ParticipantBase, position: TradingPosition, realized: Decimal) -> None:
    """Fold one closed position into the owner's capital and trade statistics"""
    pnl = Decimal(str(participant.pnl)) + realized
    participant.pnl = float(pnl)
    participant.current_capital = float(Decimal(str(participant.current_capital)) + realized)
    participant.used_margin = max(
        float(Decimal(str(participant.used_margin)) - Decimal(str(position.margin_used))), 0.0
    )
    participant.current_open_positions = max(participant.current_open_positions - 1, 0)
    participant.total_trades += 1

    if realized > 0:
        participant.winning_trades += 1
        participant.gross_profit = float(Decimal(str(participant.gross_profit)) + realized)
    elif realized < 0:
        participant.losing_trades += 1
        participant.gross_loss = float(Decimal(str(participant.gross_loss)) - realized)

    if participant.starting_capital > 0:
        participant.pnl_percentage = float(
            (pnl / Decimal(str(participant.starting_capital)) * 100).quantize(CENT, rounding=ROUND_HALF_UP)
        )


def close_position(
    position: TradingPosition,
    participant: ParticipantBase,
    exit_price: float,
    reason: CloseReason,
    closed_at: Optional[datetime] = None
) -> Decimal:
    """Close an open position in place and return the realized P&L"""
    if position.status != PositionStatus.OPEN.value:
        raise ValueError(f"Position {position.id} is already {position.status}")

    realized = calculate_pnl(position, exit_price)

    position.status = PositionStatus.CLOSED.value
    position.exit_price = float(exit_price)
    position.current_price = float(exit_price)
    position.realized_pnl = float(realized)
    position.close_reason = reason.value
    position.closed_at = closed_at or utcnow()

    apply_realized_pnl(participant, position, realized)

    logger.debug(
        f"Closed position {position.id} ({position.side} {position.symbol}) "
        f"at {exit_price}: pnl={realized} reason={reason.value}"
    )
    return realized
