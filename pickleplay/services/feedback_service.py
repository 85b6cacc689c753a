"""
Peer feedback aggregation.

Reduces higher/correct/lower votes into a per-player consensus in [-1, +1]
and blends that consensus into rating deltas. No database access.
"""

from typing import Dict, Iterable, Optional, Tuple

from pickleplay.database.models import FeedbackVote
from pickleplay.utils.constants import (
    FEEDBACK_WEIGHT,
    CONSENSUS_AGREEMENT_THRESHOLD,
    RELIABILITY_GAIN_AGREED,
    RELIABILITY_GAIN_DISPUTED,
    MIN_RELIABILITY,
    MAX_RELIABILITY,
)

_VOTE_VALUES = {
    FeedbackVote.HIGHER: 1,
    FeedbackVote.CORRECT: 0,
    FeedbackVote.LOWER: -1,
}

# (from_user_id, about_user_id, vote)
VoteRow = Tuple[str, str, str]


def parse_vote(vote) -> FeedbackVote:
    """
    Parse a raw vote value.

    Raises:
        ValueError: If the vote is not one of higher/correct/lower
    """
    try:
        return FeedbackVote(vote)
    except ValueError:
        allowed = ", ".join(v.value for v in FeedbackVote)
        raise ValueError(f"Invalid vote {vote!r}; expected one of: {allowed}")


def vote_to_number(vote) -> int:
    """higher = +1, correct = 0, lower = -1."""
    return _VOTE_VALUES[parse_vote(vote)]


def aggregate_consensus(votes: Iterable[VoteRow]) -> Dict[str, float]:
    """
    Average the numeric votes cast about each player.

    Self-votes are dropped before averaging. Players nobody voted on get no entry.

    Args:
        votes: (from_user_id, about_user_id, vote) rows

    Returns:
        Dict of about_user_id -> consensus score in [-1, +1]
    """
    sums: Dict[str, int] = {}
    counts: Dict[str, int] = {}

    for from_user_id, about_user_id, vote in votes:
        if from_user_id == about_user_id:
            continue
        sums[about_user_id] = sums.get(about_user_id, 0) + vote_to_number(vote)
        counts[about_user_id] = counts.get(about_user_id, 0) + 1

    return {user_id: total / counts[user_id] for user_id, total in sums.items()}


def apply_feedback_adjustment(
    deltas: Dict[str, float],
    consensus: Dict[str, float],
    weight: float = FEEDBACK_WEIGHT,
) -> Dict[str, float]:
    """
    Nudge rating deltas toward peer consensus.

    Returns:
        New dict; ``deltas`` is left untouched
    """
    adjusted = dict(deltas)
    for user_id, score in consensus.items():
        adjusted[user_id] = adjusted.get(user_id, 0.0) + score * weight
    return adjusted


def reliability_gain(consensus: Optional[float], competitive: bool) -> int:
    """
    Reliability points earned for one finalized match.

    Peers agreeing the rating is about right (|consensus| < 0.3) earns more
    than a disputed rating. Friendly matches earn nothing.
    """
    if not competitive:
        return 0
    if abs(consensus or 0.0) < CONSENSUS_AGREEMENT_THRESHOLD:
        return RELIABILITY_GAIN_AGREED
    return RELIABILITY_GAIN_DISPUTED


def next_reliability(current_pct: Optional[int], consensus: Optional[float], competitive: bool) -> int:
    """Current reliability plus this match's gain, clamped to [0, 100]."""
    updated = (current_pct or 0) + reliability_gain(consensus, competitive)
    return int(round(max(MIN_RELIABILITY, min(MAX_RELIABILITY, updated))))
