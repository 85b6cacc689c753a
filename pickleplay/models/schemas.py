"""
Pydantic models for API request/response validation.
"""

from datetime import datetime
from typing import Optional, List, Any
from pydantic import BaseModel, Field


class CreateMatchRequest(BaseModel):
    """Request to schedule a doubles match."""

    court_id: int
    scheduled_at: datetime
    duration_minutes: int = Field(default=60, gt=0)
    competitive: bool = True
    title: Optional[str] = None


class SetTeamsRequest(BaseModel):
    """Host's explicit team assignment."""

    team_a: List[str]
    team_b: List[str]


class CompleteMatchRequest(BaseModel):
    """
    Host-reported match result.

    sets are [team_a_score, team_b_score] pairs; winner_team is "A", "B" or "tie".
    Values are validated by the match service so errors share one format.
    """

    sets: List[Any] = Field(default_factory=list)
    winner_team: str = "A"
    competitive: Optional[bool] = None  # None keeps the flag chosen at creation


class FeedbackVoteRequest(BaseModel):
    """One peer vote."""

    about_user_id: str
    vote: str  # higher | correct | lower


class SubmitFeedbackRequest(BaseModel):
    """A participant's votes about other participants."""

    votes: List[FeedbackVoteRequest]


class InitialRatingRequest(BaseModel):
    """Onboarding self-assessed rating."""

    rating: float


class MatchResponse(BaseModel):
    """Match detail."""

    id: int
    court_id: int
    creator_id: str
    title: Optional[str] = None
    scheduled_at: Optional[str] = None
    duration_minutes: int
    competitive: bool
    status: str
    result: Optional[dict] = None
    feedback_deadline: Optional[str] = None
    finalized_at: Optional[str] = None
    team_a: List[str]
    team_b: List[str]
    feedback_submitted_by: Optional[List[str]] = None


class CompleteMatchResponse(BaseModel):
    status: str
    feedback_deadline: str


class SubmitFeedbackResponse(BaseModel):
    finalized: bool
    reason: Optional[str] = None


class FinalizeResponse(BaseModel):
    ok: bool
    reason: Optional[str] = None


class PlayerProfileResponse(BaseModel):
    """Player rating profile."""

    user_id: str
    rating: float
    reliability_pct: int
    matches_played: int
    matches_won: int


class RatingHistoryEntryResponse(BaseModel):
    rating: float
    rating_change: float
    match_id: Optional[int] = None
    recorded_at: Optional[str] = None


class MatchHistoryEntryResponse(BaseModel):
    match_id: int
    title: str
    court_id: int
    scheduled_at: Optional[str] = None
    team: str
    competitive: bool
    outcome: str
    sets: List[Any]
    finalized_at: Optional[str] = None


class MatchStatsResponse(BaseModel):
    wins: int
    losses: int
    ties: int
    total: int


class MyMatchesResponse(BaseModel):
    """Recent finalized matches with a win/loss/tie summary."""

    stats: MatchStatsResponse
    recent_matches: List[MatchHistoryEntryResponse]
