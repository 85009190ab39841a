"""
Risk Evaluator

Classifies a participant's margin level against configured thresholds.
margin level = (current capital + unrealized P&L) / used margin * 100
Lower is more dangerous. Pure: no I/O, no mutation.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import math

from chartvolt.core.config import settings
from chartvolt.core.exceptions import ConfigurationError


class MarginStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    MARGIN_CALL = "margin_call"
    LIQUIDATION = "liquidation"


@dataclass(frozen=True)
class MarginThresholds:
    """Margin level thresholds in percent. Ordering: liquidation < margin_call < warning."""
    warning: float = 150
    margin_call: float = 100
    liquidation: float = 50

    def __post_init__(self):
        for name in ("warning", "margin_call", "liquidation"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or math.isnan(value) or value < 0:
                raise ConfigurationError(f"Margin threshold {name} must be a non-negative number, got {value!r}")
        if not (self.liquidation < self.margin_call < self.warning):
            raise ConfigurationError(
                "Margin thresholds must satisfy liquidation < margin_call < warning "
                f"(got liquidation={self.liquidation}, margin_call={self.margin_call}, "
                f"warning={self.warning})"
            )

    @classmethod
    def from_settings(cls) -> "MarginThresholds":
        return cls(
            warning=settings.MARGIN_WARNING_LEVEL,
            margin_call=settings.MARGIN_CALL_LEVEL,
            liquidation=settings.MARGIN_LIQUIDATION_LEVEL,
        )

    @classmethod
    def from_limits(cls, limits: Optional[dict], default: "MarginThresholds") -> "MarginThresholds":
        """Apply a competition's risk_limits override on top of the defaults"""
        if not limits:
            return default
        try:
            return cls(
                warning=float(limits.get("warning", default.warning)),
                margin_call=float(limits.get("margin_call", default.margin_call)),
                liquidation=float(limits.get("liquidation", default.liquidation)),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"Malformed risk limits {limits!r}: {e}")


@dataclass(frozen=True)
class MarginReport:
    status: MarginStatus
    margin_level: float   # math.inf when no margin is in use
    equity: float


def margin_level(current_capital: float, unrealized_pnl: float, used_margin: float) -> float:
    if used_margin <= 0:
        return math.inf
    return (current_capital + unrealized_pnl) / used_margin * 100


class RiskEvaluator:
    """Threshold-validated margin classifier. Construction fails fast on bad thresholds."""

    def __init__(self, thresholds: Optional[MarginThresholds] = None):
        self.thresholds = thresholds or MarginThresholds()

    def evaluate(self, current_capital: float, unrealized_pnl: float, used_margin: float) -> MarginReport:
        level = margin_level(current_capital, unrealized_pnl, used_margin)
        t = self.thresholds

        if level < t.liquidation:
            status = MarginStatus.LIQUIDATION
        elif level < t.margin_call:
            status = MarginStatus.MARGIN_CALL
        elif level < t.warning:
            status = MarginStatus.WARNING
        else:
            status = MarginStatus.HEALTHY

        return MarginReport(
            status=status,
            margin_level=level,
            equity=current_capital + unrealized_pnl,
        )

    def margin_status(self, current_capital: float, unrealized_pnl: float, used_margin: float) -> MarginStatus:
        return self.evaluate(current_capital, unrealized_pnl, used_margin).status


def margin_status(
    current_capital: float,
    unrealized_pnl: float,
    used_margin: float,
    thresholds: MarginThresholds
) -> MarginStatus:
    return RiskEvaluator(thresholds).margin_status(current_capital, unrealized_pnl, used_margin)
