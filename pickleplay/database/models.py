"""
SQLAlchemy ORM models for the match finalization and rating system.
"""

import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    Float,
    DateTime,
    Enum,
    ForeignKey,
    JSON,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from pickleplay.database.db import Base


class MatchStatus(str, enum.Enum):
    """Match lifecycle status. Transitions only move forward."""

    SCHEDULED = "scheduled"
    AWAITING_FEEDBACK = "awaiting_feedback"
    FINALIZED = "finalized"

    def can_transition_to(self, target: "MatchStatus") -> bool:
        """Check whether moving from this status to ``target`` is a legal transition."""
        return target in _MATCH_STATUS_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not _MATCH_STATUS_TRANSITIONS[self]


_MATCH_STATUS_TRANSITIONS = {
    MatchStatus.SCHEDULED: {MatchStatus.AWAITING_FEEDBACK},
    MatchStatus.AWAITING_FEEDBACK: {MatchStatus.FINALIZED},
    MatchStatus.FINALIZED: set(),
}


class Team(str, enum.Enum):
    """Doubles side."""

    A = "A"
    B = "B"


class WinnerTeam(str, enum.Enum):
    """Winner indicator frozen into the match result."""

    A = "A"
    B = "B"
    TIE = "tie"


class FeedbackVote(str, enum.Enum):
    """Peer vote on whether a player's rating looks right."""

    HIGHER = "higher"
    CORRECT = "correct"
    LOWER = "lower"


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


class PlayerProfile(Base):
    """Skill rating profile. Rating columns are only written by finalization/onboarding."""

    __tablename__ = "player_profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, unique=True)
    rating = Column(Float, nullable=False, default=3.0)  # 0.0 - 7.0
    reliability_pct = Column(Integer, nullable=False, default=0)  # 0 - 100
    matches_played = Column(Integer, nullable=False, default=0)
    matches_won = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("rating >= 0 AND rating <= 7", name="ck_player_profiles_rating_range"),
        CheckConstraint(
            "reliability_pct >= 0 AND reliability_pct <= 100",
            name="ck_player_profiles_reliability_range",
        ),
        Index("idx_player_profiles_user_id", "user_id"),
    )


class Match(Base):
    """Doubles match on a court, from scheduling through rating finalization."""

    __tablename__ = "matches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    court_id = Column(Integer, nullable=False)  # Courts live in the venue service
    creator_id = Column(String, nullable=False)
    title = Column(String, nullable=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)
    competitive = Column(Boolean, nullable=False, default=True)
    status = Column(
        Enum(MatchStatus, values_callable=_enum_values, name="match_status"),
        nullable=False,
        default=MatchStatus.SCHEDULED,
    )
    # {"sets": [[11, 8], [9, 11]], "winner_team": "A"} - written once on completion
    result = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    feedback_deadline = Column(DateTime(timezone=True), nullable=True)
    finalized_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    players = relationship("MatchPlayer", back_populates="match", lazy="select")

    __table_args__ = (
        Index("idx_matches_status", "status"),
        Index("idx_matches_creator", "creator_id"),
        Index("idx_matches_status_deadline", "status", "feedback_deadline"),
    )


class MatchPlayer(Base):
    """Match membership and team assignment."""

    __tablename__ = "match_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(Integer, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, nullable=False)
    team = Column(Enum(Team, values_callable=_enum_values, name="match_team"), nullable=False)
    joined_at = Column(DateTime(timezone=True), server_default=func.now())

    match = relationship("Match", back_populates="players")

    __table_args__ = (
        UniqueConstraint("match_id", "user_id", name="uq_match_players_match_user"),
        Index("idx_match_players_match_id", "match_id"),
        Index("idx_match_players_user_id", "user_id"),
    )


class PeerFeedback(Base):
    """One participant's vote about another participant's rating in a match."""

    __tablename__ = "peer_feedback"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(Integer, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False)
    from_user_id = Column(String, nullable=False)
    about_user_id = Column(String, nullable=False)
    vote = Column(
        Enum(FeedbackVote, values_callable=_enum_values, name="feedback_vote"), nullable=False
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint(
            "match_id", "from_user_id", "about_user_id", name="uq_peer_feedback_match_from_about"
        ),
        CheckConstraint("from_user_id <> about_user_id", name="ck_peer_feedback_not_self"),
        Index("idx_peer_feedback_match_id", "match_id"),
    )


class RatingHistory(Base):
    """Append-only rating snapshots for charting and audit."""

    __tablename__ = "rating_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    rating = Column(Float, nullable=False)
    rating_change = Column(Float, nullable=False, default=0.0)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=True)  # NULL for onboarding
    recorded_at = Column(DateTime(timezone=True), server_default=func.now())

    match = relationship("Match")

    __table_args__ = (
        Index("idx_rating_history_user", "user_id"),
        Index("idx_rating_history_match", "match_id"),
    )
