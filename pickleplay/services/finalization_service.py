"""
Match finalization service.

Decides when an awaiting_feedback match may be finalized (quorum, deadline or
forced), computes rating deltas, blends in peer consensus and commits every
player update together with the status flip in one transaction. The status
flip is a conditional update, so only one caller can finalize a match.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from pickleplay.database.models import (
    Match,
    MatchPlayer,
    MatchStatus,
    PeerFeedback,
    RatingHistory,
    Team,
    WinnerTeam,
)
from pickleplay.services import feedback_service, player_service, rating_service
from pickleplay.services.rating_service import MatchOutcome, PlayerRating
from pickleplay.utils.constants import PLAYERS_PER_TEAM, RATING_DECIMALS
from pickleplay.utils.datetime_utils import utcnow, ensure_utc

logger = logging.getLogger(__name__)


# --- Custom exceptions ---


class MatchServiceError(ValueError):
    """Base class for match lifecycle errors. ``code`` is the stable error category."""

    code = "invalid_input"


class InvalidInputError(MatchServiceError):
    """Raised for malformed votes, results or team assignments."""

    code = "invalid_input"


class ForbiddenError(MatchServiceError):
    """Raised when the caller may not perform the action (non-host, non-participant)."""

    code = "forbidden"


class InvalidStateError(MatchServiceError):
    """Raised when the match is not in the status the action requires."""

    code = "invalid_state"


class MatchNotFoundError(MatchServiceError):
    """Raised when a match id does not exist."""

    code = "not_found"


class FinalizationConflictError(MatchServiceError):
    """Raised when another request changed the match status first. Safe to retry."""

    code = "conflict"


class FinalizationIntegrityError(RuntimeError):
    """Raised when finalization writes failed after the match was claimed."""


# --- Results ---

NOT_AWAITING = "not_awaiting"
WAITING_FOR_FEEDBACK = "waiting_for_feedback"
BAD_TEAMS = "bad_teams"
CONFLICT = "conflict"


@dataclass
class FinalizeResult:
    """Outcome of a finalization attempt. ``reason`` is set when ok is False."""

    ok: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict:
        data = {"ok": self.ok}
        if self.reason:
            data["reason"] = self.reason
        return data


# ============================================================================
# Helpers
# ============================================================================

async def get_match_or_raise(session: AsyncSession, match_id: int, for_update: bool = False) -> Match:
    """
    Load a match, refreshed from the database, or raise MatchNotFoundError.

    With ``for_update`` the match row stays locked until the transaction ends,
    which serializes roster changes on the same match.
    """
    stmt = select(Match).where(Match.id == match_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    match = result.scalar_one_or_none()
    if not match:
        raise MatchNotFoundError(f"Match {match_id} not found")
    return match


async def get_participants(session: AsyncSession, match_id: int) -> List[MatchPlayer]:
    result = await session.execute(
        select(MatchPlayer)
        .where(MatchPlayer.match_id == match_id)
        .order_by(MatchPlayer.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_feedback_submitters(session: AsyncSession, match_id: int) -> Set[str]:
    """User ids that have submitted at least one feedback row for a match."""
    result = await session.execute(
        select(PeerFeedback.from_user_id).where(PeerFeedback.match_id == match_id).distinct()
    )
    return set(result.scalars().all())


def has_feedback_quorum(participant_ids: Iterable[str], submitter_ids: Set[str]) -> bool:
    """
    True when every participant has submitted at least one feedback row.

    A single vote about anyone counts; participants do not have to rate all
    three other players.
    """
    return all(user_id in submitter_ids for user_id in participant_ids)


def deadline_passed(match: Match, now: datetime) -> bool:
    deadline = ensure_utc(match.feedback_deadline)
    return deadline is not None and now >= deadline


def outcome_for_team_a(winner_team) -> MatchOutcome:
    """Translate the frozen winner indicator into team A's outcome."""
    winner = WinnerTeam(winner_team)
    if winner == WinnerTeam.A:
        return MatchOutcome.WIN
    if winner == WinnerTeam.B:
        return MatchOutcome.LOSS
    return MatchOutcome.TIE


async def claim_for_finalization(session: AsyncSession, match_id: int, now: datetime) -> bool:
    """
    Compare-and-set the match from awaiting_feedback to finalized.

    Returns:
        True if this caller won the transition; False if the status had
        already moved on (another request finalized it first)
    """
    result = await session.execute(
        update(Match)
        .where(Match.id == match_id, Match.status == MatchStatus.AWAITING_FEEDBACK)
        .values(status=MatchStatus.FINALIZED, finalized_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ============================================================================
# Finalization
# ============================================================================

async def try_finalize(session: AsyncSession, match_id: int, force: bool = False) -> FinalizeResult:
    """
    Finalize a match if it is eligible.

    Eligible when ``force`` is set, the feedback deadline has passed, or every
    participant has submitted feedback. Commits on success; on any
    non-success result nothing has been written.

    Args:
        session: Database session
        match_id: Match ID
        force: Skip the quorum/deadline check (deadline worker, admin)

    Returns:
        FinalizeResult(ok=True) or FinalizeResult(ok=False, reason=...)

    Raises:
        MatchNotFoundError: If the match does not exist
        FinalizationIntegrityError: If writes failed after the match was claimed
    """
    match = await get_match_or_raise(session, match_id)
    if match.status != MatchStatus.AWAITING_FEEDBACK:
        return FinalizeResult(ok=False, reason=NOT_AWAITING)

    now = utcnow()
    participants = await get_participants(session, match_id)
    participant_ids = [p.user_id for p in participants]

    if not force and not deadline_passed(match, now):
        submitters = await get_feedback_submitters(session, match_id)
        if not has_feedback_quorum(participant_ids, submitters):
            return FinalizeResult(ok=False, reason=WAITING_FOR_FEEDBACK)

    team_a_ids = [p.user_id for p in participants if p.team == Team.A]
    team_b_ids = [p.user_id for p in participants if p.team == Team.B]
    if len(team_a_ids) != PLAYERS_PER_TEAM or len(team_b_ids) != PLAYERS_PER_TEAM:
        logger.warning(
            f"Match {match_id} cannot be finalized: teams are "
            f"{len(team_a_ids)}v{len(team_b_ids)}"
        )
        return FinalizeResult(ok=False, reason=BAD_TEAMS)

    if not await claim_for_finalization(session, match_id, now):
        await session.rollback()
        logger.info(f"Match {match_id} was finalized by a concurrent request")
        return FinalizeResult(ok=False, reason=CONFLICT)

    set_committed_value(match, "status", MatchStatus.FINALIZED)
    set_committed_value(match, "finalized_at", now)

    try:
        await _apply_ratings(session, match, team_a_ids, team_b_ids, now)
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.critical(
            f"Finalization of match {match_id} failed after claim; rolled back: {e}",
            exc_info=True,
        )
        raise FinalizationIntegrityError(f"Failed to finalize match {match_id}") from e

    logger.info(f"Match {match_id} finalized (force={force})")
    return FinalizeResult(ok=True)


async def _apply_ratings(
    session: AsyncSession,
    match: Match,
    team_a_ids: List[str],
    team_b_ids: List[str],
    now: datetime,
) -> None:
    """Compute and write rating, reliability, counters and history for all four players."""
    result = match.result or {}
    sets = [tuple(s) for s in result.get("sets") or []]
    winner_team = result.get("winner_team", WinnerTeam.A.value)
    competitive = True if match.competitive is None else bool(match.competitive)

    profiles = await player_service.lock_profiles(session, team_a_ids + team_b_ids)

    def _rating_inputs(user_ids):
        return [
            PlayerRating(
                user_id=user_id,
                rating=profiles[user_id].rating,
                reliability_pct=profiles[user_id].reliability_pct,
            )
            for user_id in user_ids
        ]

    team_a = _rating_inputs(team_a_ids)
    team_b = _rating_inputs(team_b_ids)
    outcome = outcome_for_team_a(winner_team)

    computation = rating_service.compute_deltas(
        competitive=competitive,
        team_a=team_a,
        team_b=team_b,
        outcome_for_team_a=outcome,
        sets=sets,
    )
    logger.info(
        f"Match {match.id} rating breakdown: reason={computation.reason} "
        f"avg_a={computation.avg_a} avg_b={computation.avg_b} "
        f"expected_a={computation.expected_a} actual_a={computation.actual_a} "
        f"margin={computation.margin_multiplier} team_delta_a={computation.team_delta_a}"
    )

    feedback_result = await session.execute(
        select(PeerFeedback.from_user_id, PeerFeedback.about_user_id, PeerFeedback.vote).where(
            PeerFeedback.match_id == match.id
        )
    )
    consensus = feedback_service.aggregate_consensus(
        (row.from_user_id, row.about_user_id, row.vote) for row in feedback_result.all()
    )
    deltas = feedback_service.apply_feedback_adjustment(computation.deltas, consensus)

    winners = set()
    if outcome == MatchOutcome.WIN:
        winners = set(team_a_ids)
    elif outcome == MatchOutcome.LOSS:
        winners = set(team_b_ids)

    for player in [*team_a, *team_b]:
        profile = profiles[player.user_id]
        new_rating = rating_service.apply_delta(player.rating, deltas.get(player.user_id, 0.0))

        profile.rating = new_rating
        profile.reliability_pct = feedback_service.next_reliability(
            profile.reliability_pct, consensus.get(player.user_id), competitive
        )
        profile.matches_played = (profile.matches_played or 0) + 1
        if player.user_id in winners:
            profile.matches_won = (profile.matches_won or 0) + 1

        session.add(
            RatingHistory(
                user_id=player.user_id,
                rating=new_rating,
                rating_change=round(new_rating - player.rating, RATING_DECIMALS),
                match_id=match.id,
                recorded_at=now,
            )
        )

    await session.flush()
