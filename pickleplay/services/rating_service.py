"""
Skill rating model.

Team-average expected outcome, scaled by score margin and dampened per player
by rating reliability. Pure functions only - no database access.
"""

import enum
import math
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pickleplay.utils.constants import (
    K,
    EXPECTED_OUTCOME_KAPPA,
    MARGIN_MULTIPLIER_MIN,
    MARGIN_MULTIPLIER_MAX,
    MARGIN_MAX_POINT_DIFF,
    RELIABILITY_DAMPENING,
    MIN_RATING,
    MAX_RATING,
    MIN_RELIABILITY,
    MAX_RELIABILITY,
    RATING_DECIMALS,
)


class MatchOutcome(str, enum.Enum):
    """Result of a match from one team's point of view."""

    WIN = "win"
    LOSS = "loss"
    TIE = "tie"


SetScore = Tuple[int, int]


@dataclass(frozen=True)
class PlayerRating:
    """A player's rating inputs for one match."""

    user_id: str
    rating: float
    reliability_pct: int = 0


@dataclass
class RatingComputation:
    """Per-player deltas plus the intermediate values that produced them."""

    deltas: Dict[str, float]
    reason: Optional[str] = None
    avg_a: Optional[float] = None
    avg_b: Optional[float] = None
    expected_a: Optional[float] = None
    actual_a: Optional[float] = None
    error: Optional[float] = None
    margin_multiplier: Optional[float] = None
    team_delta_a: Optional[float] = None
    k: float = field(default=K)


# ============================================================================
# Helper Functions
# ============================================================================

def clamp(value: float, low: float, high: float) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


def expected_outcome(avg_rating_a: float, avg_rating_b: float) -> float:
    """
    Probability that team A beats team B.

    Formula: E = 1 / (1 + e^(-(avg_A - avg_B) * kappa))
    On the 0-7 scale a one-point gap gives the stronger team roughly 78%.
    """
    diff = (avg_rating_a - avg_rating_b) * EXPECTED_OUTCOME_KAPPA
    return 1 / (1 + math.exp(-diff))


def actual_outcome(outcome: MatchOutcome) -> float:
    """Score for a team: win = 1, loss = 0, tie = 0.5."""
    outcome = MatchOutcome(outcome)
    if outcome == MatchOutcome.WIN:
        return 1.0
    if outcome == MatchOutcome.LOSS:
        return 0.0
    return 0.5


def margin_multiplier(sets: Optional[Sequence[SetScore]]) -> float:
    """
    Scale rating movement by how lopsided the match was.

    Args:
        sets: List of (team_a_score, team_b_score) pairs, e.g. [(11, 9), (7, 11)]

    Returns:
        Multiplier in [0.85, 1.20]; 1.0 when no set scores were recorded
    """
    if not sets:
        return 1.0

    diffs = [abs((a or 0) - (b or 0)) for a, b in sets]
    avg_diff = sum(diffs) / len(diffs)

    span = MARGIN_MULTIPLIER_MAX - MARGIN_MULTIPLIER_MIN
    multiplier = MARGIN_MULTIPLIER_MIN + (clamp(avg_diff, 0, MARGIN_MAX_POINT_DIFF) / MARGIN_MAX_POINT_DIFF) * span
    return clamp(multiplier, MARGIN_MULTIPLIER_MIN, MARGIN_MULTIPLIER_MAX)


def reliability_multiplier(reliability_pct: Optional[float]) -> float:
    """
    Convert reliability (0-100) to a dampening multiplier.

    0% reliability moves at full strength (1.0); 100% keeps only 0.2 of the swing.
    """
    r = clamp(float(reliability_pct or 0), MIN_RELIABILITY, MAX_RELIABILITY) / 100
    return 1.0 - RELIABILITY_DAMPENING * r


def team_average(team: Iterable[PlayerRating]) -> float:
    """Average rating of a team."""
    ratings = [float(p.rating) for p in team]
    return sum(ratings) / len(ratings)


# ============================================================================
# Delta Computation
# ============================================================================

def compute_deltas(
    competitive: bool,
    team_a: Sequence[PlayerRating],
    team_b: Sequence[PlayerRating],
    outcome_for_team_a: MatchOutcome,
    sets: Optional[Sequence[SetScore]] = None,
) -> RatingComputation:
    """
    Compute per-player rating deltas for a doubles match.

    Team B's team delta is the exact negation of team A's. Each player's delta
    is then scaled by their own reliability multiplier, so the four deltas only
    sum to zero when all reliabilities match.

    Args:
        competitive: Friendly matches never move ratings
        team_a: Team A players
        team_b: Team B players
        outcome_for_team_a: win/loss/tie from team A's point of view
        sets: Optional set scores as (team_a, team_b) pairs

    Returns:
        RatingComputation with a delta for every player
    """
    if not competitive:
        return RatingComputation(
            deltas={p.user_id: 0.0 for p in [*team_a, *team_b]},
            reason="friendly_match_no_change",
        )

    avg_a = team_average(team_a)
    avg_b = team_average(team_b)

    expected_a = expected_outcome(avg_a, avg_b)
    actual_a = actual_outcome(outcome_for_team_a)
    error = actual_a - expected_a  # positive if A overperformed

    margin = margin_multiplier(sets)
    team_delta_a = K * error * margin
    team_delta_b = -team_delta_a

    deltas: Dict[str, float] = {}
    for player in team_a:
        deltas[player.user_id] = team_delta_a * reliability_multiplier(player.reliability_pct)
    for player in team_b:
        deltas[player.user_id] = team_delta_b * reliability_multiplier(player.reliability_pct)

    return RatingComputation(
        deltas=deltas,
        avg_a=avg_a,
        avg_b=avg_b,
        expected_a=expected_a,
        actual_a=actual_a,
        error=error,
        margin_multiplier=margin,
        team_delta_a=team_delta_a,
    )


def apply_delta(
    rating: float,
    delta: float,
    min_rating: float = MIN_RATING,
    max_rating: float = MAX_RATING,
) -> float:
    """Apply one delta, clamp to the rating scale and round."""
    return round(clamp(float(rating) + delta, min_rating, max_rating), RATING_DECIMALS)


def apply_deltas(
    players: Iterable[PlayerRating],
    deltas: Dict[str, float],
    min_rating: float = MIN_RATING,
    max_rating: float = MAX_RATING,
) -> List[PlayerRating]:
    """
    Apply deltas to players.

    Players without a delta keep their rating (still clamped and rounded).

    Returns:
        New PlayerRating instances with updated ratings
    """
    return [
        replace(p, rating=apply_delta(p.rating, deltas.get(p.user_id, 0.0), min_rating, max_rating))
        for p in players
    ]
