"""
Ranking Engine

Pure ranking of competition participants under a configurable metric.
No I/O and no mutation: safe to call concurrently and repeatedly.

Ordering is descending by metric, then the competition's tie-breakers,
then earliest entry time, then participant id, so equal metrics always
produce the same distinct ranks.
"""

from dataclasses import dataclass, asdict
from typing import Iterable, Optional, Sequence
from uuid import UUID

from chartvolt.core.exceptions import ConfigurationError
from chartvolt.models.competition import ParticipantBase, ParticipantStatus, RankingMethod, TieBreaker

# Comparable stand-in for an unbounded profit factor (wins with no losses)
PROFIT_FACTOR_CAP = 9999.0


@dataclass
class RankingResult:
    participant_id: Optional[UUID]
    user_id: UUID
    current_rank: Optional[int]
    total_ranked: int
    metric_value: float
    top_competitor_metric: float
    gap_to_leader: float
    percent_of_leader: float
    meets_minimum_trades: bool
    probability_score: float
    status: str  # winning | close | far | disqualified

    def to_dict(self) -> dict:
        data = asdict(self)
        data["participant_id"] = str(self.participant_id) if self.participant_id else None
        data["user_id"] = str(self.user_id)
        return data


# ============================================================================
# METRIC EXTRACTION
# ============================================================================

def coerce_method(method: str | RankingMethod) -> RankingMethod:
    try:
        return RankingMethod(method)
    except ValueError:
        raise ConfigurationError(f"Unknown ranking method: {method!r}")


def coerce_tie_breakers(values: Iterable[Optional[str]]) -> tuple[TieBreaker, ...]:
    breakers = []
    for value in values:
        if not value:
            continue
        try:
            breakers.append(TieBreaker(value))
        except ValueError:
            raise ConfigurationError(f"Unknown tie breaker: {value!r}")
    return tuple(breakers)


def roi(participant: ParticipantBase) -> float:
    if participant.starting_capital <= 0:
        return 0.0
    return participant.pnl / participant.starting_capital * 100


def win_rate(participant: ParticipantBase) -> float:
    if participant.total_trades <= 0:
        return 0.0
    return participant.winning_trades / participant.total_trades * 100


def profit_factor(participant: ParticipantBase) -> float:
    if participant.gross_loss > 0:
        return participant.gross_profit / participant.gross_loss
    return PROFIT_FACTOR_CAP if participant.gross_profit > 0 else 0.0


def extract_metric(method: str | RankingMethod, participant: ParticipantBase) -> float:
    method = coerce_method(method)

    if method == RankingMethod.PNL:
        return float(participant.pnl)
    elif method == RankingMethod.ROI:
        return roi(participant)
    elif method == RankingMethod.TOTAL_CAPITAL:
        return float(participant.current_capital)
    elif method == RankingMethod.WIN_RATE:
        return win_rate(participant)
    elif method == RankingMethod.TOTAL_WINS:
        return float(participant.winning_trades)
    elif method == RankingMethod.PROFIT_FACTOR:
        return profit_factor(participant)
    raise ConfigurationError(f"Ranking method not handled: {method}")


def _tie_breaker_key(breaker: TieBreaker, participant: ParticipantBase) -> float:
    # Ascending sort key: smaller sorts first
    if breaker == TieBreaker.TRADES_COUNT:
        return float(participant.total_trades)
    elif breaker == TieBreaker.WIN_RATE:
        return -win_rate(participant)
    elif breaker == TieBreaker.TOTAL_CAPITAL:
        return -float(participant.current_capital)
    elif breaker == TieBreaker.ROI:
        return -roi(participant)
    elif breaker == TieBreaker.JOIN_TIME:
        return participant.entered_at.timestamp()
    raise ConfigurationError(f"Tie breaker not handled: {breaker}")


def sort_participants(
    method: str | RankingMethod,
    participants: Iterable[ParticipantBase],
    tie_breakers: Sequence[str | TieBreaker] = ()
) -> list:
    """Return participants best-first. Input order never affects the result."""
    method = coerce_method(method)
    breakers = coerce_tie_breakers(tie_breakers)

    def key(p):
        return (
            -extract_metric(method, p),
            *(_tie_breaker_key(b, p) for b in breakers),
            p.entered_at,
            str(getattr(p, "id", "") or ""),
        )

    return sorted(participants, key=key)


def meets_minimum_trades(participant: ParticipantBase, minimum_trades: int) -> bool:
    return participant.total_trades >= minimum_trades


# ============================================================================
# RANKING ENGINE
# ============================================================================

class RankingEngine:
    """
    Ranks one participant against the field and scores their chance of
    finishing inside the prize ranks (0-100).

    Score components:
    - position (0-40): 25-40 inside the prize ranks, 0-20 outside
    - gap (0-25): percent of the eligible leader's metric, banded
    - performance (0-20): metric relative to the field average
    - security (0-15): cushion over the first rank outside the prizes
    """

    def __init__(
        self,
        method: str | RankingMethod,
        minimum_trades: int = 0,
        prize_ranks: Iterable[int] = (1,),
        tie_breakers: Sequence[Optional[str]] = ()
    ):
        self.method = coerce_method(method)
        self.minimum_trades = minimum_trades
        ranks = sorted({int(r) for r in prize_ranks})
        if any(r < 1 for r in ranks):
            raise ConfigurationError(f"Prize ranks must be >= 1: {ranks}")
        self.last_prize_rank = ranks[-1] if ranks else 1
        self.tie_breakers = coerce_tie_breakers(tie_breakers)

    def order(self, participants: Iterable[ParticipantBase]) -> list:
        """Active participants best-first; disqualified and withdrawn are not ranked."""
        active = [p for p in participants if p.status == ParticipantStatus.ACTIVE.value]
        return sort_participants(self.method, active, self.tie_breakers)

    def rank(self, participant: ParticipantBase, all_participants: Iterable[ParticipantBase]) -> RankingResult:
        ordered = self.order(all_participants)
        metric = extract_metric(self.method, participant)
        meets_minimum = meets_minimum_trades(participant, self.minimum_trades)

        eligible = [p for p in ordered if meets_minimum_trades(p, self.minimum_trades)]
        reference = eligible or ordered
        leader_metric = extract_metric(self.method, reference[0]) if reference else metric
        pct_of_leader = _percent_of(metric, leader_metric)

        position = self._position_of(participant, ordered)
        if position is None:
            return RankingResult(
                participant_id=getattr(participant, "id", None),
                user_id=participant.user_id,
                current_rank=None,
                total_ranked=len(ordered),
                metric_value=round(metric, 4),
                top_competitor_metric=round(leader_metric, 4),
                gap_to_leader=round(leader_metric - metric, 4),
                percent_of_leader=round(pct_of_leader, 2),
                meets_minimum_trades=meets_minimum,
                probability_score=0.0,
                status="disqualified",
            )

        current_rank = position + 1
        field_metrics = [extract_metric(self.method, p) for p in reference]
        scale = max((abs(m) for m in field_metrics), default=0.0) or 1.0
        average = sum(field_metrics) / len(field_metrics) if field_metrics else metric

        score = (
            self._position_score(current_rank, len(ordered))
            + _gap_score(pct_of_leader)
            + _clamp(10 + (metric - average) / scale * 10, 0, 20)
            + self._security_score(current_rank, metric, ordered, scale)
        )

        if current_rank <= self.last_prize_rank:
            status = "winning"
        elif current_rank <= self.last_prize_rank + 2:
            status = "close"
        else:
            status = "far"

        return RankingResult(
            participant_id=getattr(participant, "id", None),
            user_id=participant.user_id,
            current_rank=current_rank,
            total_ranked=len(ordered),
            metric_value=round(metric, 4),
            top_competitor_metric=round(leader_metric, 4),
            gap_to_leader=round(leader_metric - metric, 4),
            percent_of_leader=round(pct_of_leader, 2),
            meets_minimum_trades=meets_minimum,
            probability_score=round(_clamp(score, 0, 100), 1),
            status=status,
        )

    def leaderboard(self, participants: Sequence[ParticipantBase]) -> list[RankingResult]:
        return [self.rank(p, participants) for p in self.order(participants)]

    @staticmethod
    def _position_of(participant: ParticipantBase, ordered: list) -> Optional[int]:
        for index, candidate in enumerate(ordered):
            if candidate is participant:
                return index
        participant_id = getattr(participant, "id", None)
        if participant_id is not None:
            for index, candidate in enumerate(ordered):
                if getattr(candidate, "id", None) == participant_id:
                    return index
        return None

    def _position_score(self, rank: int, total: int) -> float:
        if rank <= self.last_prize_rank:
            if self.last_prize_rank == 1:
                return 40.0
            return 40 - (rank - 1) / (self.last_prize_rank - 1) * 15
        outside = max(total - self.last_prize_rank, 1)
        return _clamp(20 * (1 - (rank - self.last_prize_rank - 1) / outside), 0, 20)

    def _security_score(self, rank: int, metric: float, ordered: list, scale: float) -> float:
        if rank > self.last_prize_rank:
            return 0.0
        if len(ordered) <= self.last_prize_rank:
            return 15.0
        chaser = extract_metric(self.method, ordered[self.last_prize_rank])
        return _clamp((metric - chaser) / scale * 15, 0, 15)


def rank(
    method: str | RankingMethod,
    participant: ParticipantBase,
    all_participants: Sequence[ParticipantBase],
    minimum_trades: int = 0,
    prize_ranks: Iterable[int] = (1,)
) -> RankingResult:
    """Convenience wrapper: rank one participant without keeping an engine around"""
    return RankingEngine(method, minimum_trades, prize_ranks).rank(participant, all_participants)


def _percent_of(metric: float, leader_metric: float) -> float:
    if leader_metric > 0:
        return max(metric / leader_metric * 100, 0.0)
    if metric >= leader_metric:
        return 100.0
    if metric < 0:
        return leader_metric / metric * 100
    return 0.0


def _gap_score(pct_of_leader: float) -> float:
    if pct_of_leader >= 100:
        return 25.0
    elif pct_of_leader >= 95:
        return 20.0
    elif pct_of_leader >= 80:
        return 15.0
    elif pct_of_leader >= 50:
        return 8.0
    return 0.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
