"""
Match lifecycle service.

Handles match setup (create, join, leave, set teams), completion by the host,
peer feedback submission and match reads. Finalization itself lives in
finalization_service.
"""

import logging
import os
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, update, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from pickleplay.database.models import (
    Match,
    MatchPlayer,
    MatchStatus,
    PeerFeedback,
    Team,
    WinnerTeam,
)
from pickleplay.services import feedback_service, finalization_service, player_service
from pickleplay.services.finalization_service import (
    ForbiddenError,
    FinalizationConflictError,
    InvalidInputError,
    InvalidStateError,
    get_feedback_submitters,
    get_match_or_raise,
    get_participants,
)
from pickleplay.utils.constants import (
    FEEDBACK_WINDOW_HOURS,
    MATCH_HISTORY_LIMIT,
    MATCH_LIST_LIMIT,
    PLAYERS_PER_MATCH,
    PLAYERS_PER_TEAM,
)
from pickleplay.utils.datetime_utils import utcnow, isoformat_or_none

logger = logging.getLogger(__name__)


def feedback_window() -> timedelta:
    """How long participants have to submit feedback after completion."""
    return timedelta(hours=float(os.getenv("FEEDBACK_WINDOW_HOURS", FEEDBACK_WINDOW_HOURS)))


def _match_to_dict(
    match: Match,
    participants: Sequence[MatchPlayer],
    feedback_submitted_by: Optional[Sequence[str]] = None,
) -> Dict:
    teams = {Team.A: [], Team.B: []}
    for player in participants:
        teams[player.team].append(player.user_id)
    data = {
        "id": match.id,
        "court_id": match.court_id,
        "creator_id": match.creator_id,
        "title": match.title,
        "scheduled_at": isoformat_or_none(match.scheduled_at),
        "duration_minutes": match.duration_minutes,
        "competitive": match.competitive,
        "status": match.status.value,
        "result": match.result,
        "feedback_deadline": isoformat_or_none(match.feedback_deadline),
        "finalized_at": isoformat_or_none(match.finalized_at),
        "team_a": teams[Team.A],
        "team_b": teams[Team.B],
    }
    if feedback_submitted_by is not None:
        data["feedback_submitted_by"] = sorted(feedback_submitted_by)
    return data


def _require_status(match: Match, expected: MatchStatus, message: str) -> None:
    if match.status != expected:
        raise InvalidStateError(message)


def _require_host(match: Match, user_id: str, message: str) -> None:
    if match.creator_id != user_id:
        raise ForbiddenError(message)


# ============================================================================
# Match setup
# ============================================================================

async def create_match(
    session: AsyncSession,
    creator_id: str,
    court_id: int,
    scheduled_at: datetime,
    duration_minutes: int = 60,
    competitive: bool = True,
    title: Optional[str] = None,
) -> Dict:
    """
    Create a scheduled doubles match. The creator joins team A.

    Returns:
        Dict with created match info
    """
    if duration_minutes is None or duration_minutes <= 0:
        raise InvalidInputError("Duration must be a positive number of minutes")

    match = Match(
        court_id=court_id,
        creator_id=creator_id,
        title=title,
        scheduled_at=scheduled_at,
        duration_minutes=duration_minutes,
        competitive=competitive,
        status=MatchStatus.SCHEDULED,
    )
    session.add(match)
    await session.flush()

    host = MatchPlayer(match_id=match.id, user_id=creator_id, team=Team.A)
    session.add(host)
    await player_service.get_or_create_profile(session, creator_id)
    await session.flush()

    logger.info(f"User {creator_id} created match {match.id} on court {court_id}")
    return _match_to_dict(match, [host])


async def join_match(session: AsyncSession, match_id: int, user_id: str) -> Dict:
    """
    Join a scheduled match, balancing into the smaller team.

    Joining a match you are already in is a no-op. The match row is locked
    while the roster is read, so concurrent joins cannot overfill it.

    Returns:
        Dict with the player's team
    """
    match = await get_match_or_raise(session, match_id, for_update=True)
    _require_status(match, MatchStatus.SCHEDULED, "Match is not open for joining")

    participants = await get_participants(session, match_id)
    existing = next((p for p in participants if p.user_id == user_id), None)
    if existing:
        return {"match_id": match_id, "team": existing.team.value}
    if len(participants) >= PLAYERS_PER_MATCH:
        raise InvalidStateError("Match is full (doubles)")

    count_a = sum(1 for p in participants if p.team == Team.A)
    count_b = sum(1 for p in participants if p.team == Team.B)
    team = Team.A if count_a <= count_b else Team.B

    session.add(MatchPlayer(match_id=match_id, user_id=user_id, team=team))
    await player_service.get_or_create_profile(session, user_id)
    await session.flush()

    logger.info(f"User {user_id} joined match {match_id} on team {team.value}")
    return {"match_id": match_id, "team": team.value}


async def leave_match(session: AsyncSession, match_id: int, user_id: str) -> bool:
    """
    Leave a scheduled match. The host cannot leave their own match.

    Returns:
        True if the player was removed, False if they were not in the match
    """
    match = await get_match_or_raise(session, match_id, for_update=True)
    _require_status(match, MatchStatus.SCHEDULED, "Cannot leave a match that has been played")
    if match.creator_id == user_id:
        raise ForbiddenError("The host cannot leave their own match")

    result = await session.execute(
        delete(MatchPlayer).where(
            and_(MatchPlayer.match_id == match_id, MatchPlayer.user_id == user_id)
        )
    )
    await session.flush()
    return result.rowcount > 0


async def set_teams(
    session: AsyncSession,
    match_id: int,
    host_id: str,
    team_a: Sequence[str],
    team_b: Sequence[str],
) -> Dict:
    """
    Host assigns teams explicitly: two participants on each side.
    """
    team_a = list(team_a or [])
    team_b = list(team_b or [])
    if len(team_a) != PLAYERS_PER_TEAM or len(team_b) != PLAYERS_PER_TEAM:
        raise InvalidInputError("team_a and team_b must each contain 2 user ids")
    if len(set(team_a + team_b)) != PLAYERS_PER_MATCH:
        raise InvalidInputError("Players must be unique")

    match = await get_match_or_raise(session, match_id)
    _require_host(match, host_id, "Only the host can set teams")
    _require_status(match, MatchStatus.SCHEDULED, "Cannot set teams now")

    participants = await get_participants(session, match_id)
    if len(participants) != PLAYERS_PER_MATCH:
        raise InvalidStateError("Doubles requires 4 players")
    by_user = {p.user_id: p for p in participants}
    for user_id in team_a + team_b:
        if user_id not in by_user:
            raise InvalidInputError(f"User {user_id} is not a participant in this match")

    for user_id in team_a:
        by_user[user_id].team = Team.A
    for user_id in team_b:
        by_user[user_id].team = Team.B
    await session.flush()

    return {"match_id": match_id, "team_a": team_a, "team_b": team_b}


# ============================================================================
# Completion and feedback
# ============================================================================

def _normalize_sets(sets) -> List[List[int]]:
    """Validate set scores as [team_a, team_b] pairs of non-negative integers."""
    if sets is None:
        return []
    if not isinstance(sets, (list, tuple)):
        raise InvalidInputError("sets must be a list of [team_a, team_b] scores")

    normalized = []
    for entry in sets:
        if not isinstance(entry, (list, tuple)) or len(entry) != 2:
            raise InvalidInputError("Each set must be a [team_a, team_b] score pair")
        pair = []
        for score in entry:
            if isinstance(score, bool) or not isinstance(score, int) or score < 0:
                raise InvalidInputError("Set scores must be non-negative integers")
            pair.append(score)
        normalized.append(pair)
    return normalized


async def complete_match(
    session: AsyncSession,
    match_id: int,
    host_id: str,
    sets,
    winner_team,
    competitive: Optional[bool] = None,
) -> Dict:
    """
    Host records the result and opens the feedback window.

    Freezes {sets, winner_team}; the result is never changed after this.
    When ``competitive`` is None the flag chosen at creation is kept.

    Returns:
        Dict with status and feedback_deadline

    Raises:
        InvalidInputError: Bad winner or set scores
        ForbiddenError: Caller is not the host
        InvalidStateError: Match is not scheduled or teams are not 2v2
        FinalizationConflictError: Match was completed by a concurrent request
    """
    try:
        winner = WinnerTeam(winner_team)
    except ValueError:
        raise InvalidInputError("winner_team must be A, B, or tie")
    normalized_sets = _normalize_sets(sets)

    match = await get_match_or_raise(session, match_id)
    _require_host(match, host_id, "Only the host can complete the match")
    _require_status(match, MatchStatus.SCHEDULED, "Match has already been completed")

    participants = await get_participants(session, match_id)
    if len(participants) != PLAYERS_PER_MATCH:
        raise InvalidStateError("Doubles requires 4 players")
    count_a = sum(1 for p in participants if p.team == Team.A)
    count_b = sum(1 for p in participants if p.team == Team.B)
    if count_a != PLAYERS_PER_TEAM or count_b != PLAYERS_PER_TEAM:
        raise InvalidStateError("Teams must be 2v2")

    if competitive is None:
        competitive = match.competitive
    competitive = bool(competitive)
    deadline = utcnow() + feedback_window()
    result_payload = {"sets": normalized_sets, "winner_team": winner.value}

    result = await session.execute(
        update(Match)
        .where(Match.id == match_id, Match.status == MatchStatus.SCHEDULED)
        .values(
            status=MatchStatus.AWAITING_FEEDBACK,
            competitive=competitive,
            result=result_payload,
            feedback_deadline=deadline,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise FinalizationConflictError("Match was completed by another request")
    await session.commit()

    set_committed_value(match, "status", MatchStatus.AWAITING_FEEDBACK)
    set_committed_value(match, "competitive", competitive)
    set_committed_value(match, "result", result_payload)
    set_committed_value(match, "feedback_deadline", deadline)

    logger.info(
        f"Match {match_id} completed by host {host_id}: winner={winner.value}, "
        f"feedback due {deadline.isoformat()}"
    )
    return {
        "status": MatchStatus.AWAITING_FEEDBACK.value,
        "feedback_deadline": deadline.isoformat(),
    }


def _read_vote(vote) -> Dict:
    if isinstance(vote, dict):
        return vote
    return {"about_user_id": getattr(vote, "about_user_id", None), "vote": getattr(vote, "vote", None)}


async def submit_feedback(
    session: AsyncSession,
    match_id: int,
    from_user_id: str,
    votes,
) -> Dict:
    """
    Record a participant's peer votes, then try to finalize the match.

    Every vote is validated before anything is written. Self-votes are skipped;
    repeated votes about the same player overwrite the earlier one.

    Args:
        session: Database session
        match_id: Match ID
        from_user_id: Authenticated voter
        votes: Iterable of {"about_user_id": ..., "vote": "higher"|"correct"|"lower"}

    Returns:
        Dict with finalized flag and, when not finalized, the reason
    """
    if votes is None or not isinstance(votes, (list, tuple)):
        raise InvalidInputError("votes array required")

    match = await get_match_or_raise(session, match_id)
    _require_status(match, MatchStatus.AWAITING_FEEDBACK, "Match is not awaiting feedback")

    participants = await get_participants(session, match_id)
    participant_ids = {p.user_id for p in participants}
    if from_user_id not in participant_ids:
        raise ForbiddenError("Only participants can submit feedback")

    parsed = {}
    for raw in votes:
        entry = _read_vote(raw)
        about_user_id = entry.get("about_user_id")
        about_user_id = str(about_user_id) if about_user_id not in (None, "") else None
        try:
            vote = feedback_service.parse_vote(entry.get("vote"))
        except ValueError as e:
            raise InvalidInputError(str(e))
        if not about_user_id:
            raise InvalidInputError("Each vote needs an about_user_id")
        if about_user_id not in participant_ids:
            raise InvalidInputError(f"User {about_user_id} is not a participant in this match")
        if about_user_id == from_user_id:
            continue
        parsed[about_user_id] = vote

    if parsed:
        existing_result = await session.execute(
            select(PeerFeedback).where(
                and_(
                    PeerFeedback.match_id == match_id,
                    PeerFeedback.from_user_id == from_user_id,
                    PeerFeedback.about_user_id.in_(list(parsed)),
                )
            )
        )
        existing = {row.about_user_id: row for row in existing_result.scalars().all()}
        for about_user_id, vote in parsed.items():
            if about_user_id in existing:
                existing[about_user_id].vote = vote
            else:
                session.add(
                    PeerFeedback(
                        match_id=match_id,
                        from_user_id=from_user_id,
                        about_user_id=about_user_id,
                        vote=vote,
                    )
                )
        await session.commit()
        logger.info(f"User {from_user_id} submitted {len(parsed)} vote(s) for match {match_id}")

    outcome = await finalization_service.try_finalize(session, match_id)
    if outcome.reason == finalization_service.CONFLICT:
        # Only finalization moves a match out of awaiting_feedback, so losing
        # the claim means a concurrent request finalized it
        return {"finalized": True}
    response = {"finalized": outcome.ok}
    if outcome.reason:
        response["reason"] = outcome.reason
    return response


async def finalize_match(session: AsyncSession, match_id: int, user_id: str) -> Dict:
    """
    Host-triggered forced finalization (e.g. after the deadline, before the worker runs).

    Returns:
        Dict with ok and, on failure, the reason
    """
    match = await get_match_or_raise(session, match_id)
    _require_host(match, user_id, "Only the host can finalize the match")
    outcome = await finalization_service.try_finalize(session, match_id, force=True)
    return outcome.to_dict()


# ============================================================================
# Reads
# ============================================================================

async def get_match(session: AsyncSession, match_id: int) -> Dict:
    """Match detail including teams, frozen result and who has submitted feedback."""
    match = await get_match_or_raise(session, match_id)
    participants = await get_participants(session, match_id)
    submitters = await get_feedback_submitters(session, match_id)
    return _match_to_dict(match, participants, feedback_submitted_by=submitters)


async def list_matches(
    session: AsyncSession,
    statuses: Optional[Sequence[MatchStatus]] = None,
    limit: int = MATCH_LIST_LIMIT,
) -> List[Dict]:
    """
    Matches players can browse, soonest first, with their teams.

    Args:
        session: Database session
        statuses: Statuses to include (default: scheduled and awaiting_feedback)
        limit: Maximum number of matches

    Returns:
        List of match dicts
    """
    if not statuses:
        statuses = [MatchStatus.SCHEDULED, MatchStatus.AWAITING_FEEDBACK]

    result = await session.execute(
        select(Match)
        .where(Match.status.in_(list(statuses)))
        .order_by(Match.scheduled_at.asc(), Match.id.asc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    matches = list(result.scalars().all())
    if not matches:
        return []

    players_result = await session.execute(
        select(MatchPlayer)
        .where(MatchPlayer.match_id.in_([m.id for m in matches]))
        .order_by(MatchPlayer.id)
        .execution_options(populate_existing=True)
    )
    players_by_match: Dict[int, List[MatchPlayer]] = {m.id: [] for m in matches}
    for player in players_result.scalars().all():
        players_by_match[player.match_id].append(player)

    return [_match_to_dict(match, players_by_match[match.id]) for match in matches]


async def get_match_history(
    session: AsyncSession, user_id: str, limit: int = MATCH_HISTORY_LIMIT
) -> List[Dict]:
    """
    Recent finalized matches for a player, newest first, with their outcome.
    """
    result = await session.execute(
        select(Match, MatchPlayer.team)
        .join(MatchPlayer, MatchPlayer.match_id == Match.id)
        .where(and_(MatchPlayer.user_id == user_id, Match.status == MatchStatus.FINALIZED))
        .order_by(Match.scheduled_at.desc(), Match.id.desc())
        .limit(limit)
    )

    history = []
    for match, team in result.all():
        winner = (match.result or {}).get("winner_team")
        if winner == WinnerTeam.TIE.value:
            outcome = "tie"
        elif winner in (Team.A.value, Team.B.value):
            outcome = "win" if winner == team.value else "loss"
        else:
            outcome = "unknown"
        history.append(
            {
                "match_id": match.id,
                "title": match.title or "Match",
                "court_id": match.court_id,
                "scheduled_at": isoformat_or_none(match.scheduled_at),
                "team": team.value,
                "competitive": bool(match.competitive),
                "outcome": outcome,
                "sets": (match.result or {}).get("sets", []),
                "finalized_at": isoformat_or_none(match.finalized_at),
            }
        )
    return history


async def get_my_matches(
    session: AsyncSession, user_id: str, limit: int = MATCH_HISTORY_LIMIT
) -> Dict:
    """
    Recent finalized matches for a player plus a win/loss/tie summary of them.

    Returns:
        Dict with "stats" ({wins, losses, ties, total}) and "recent_matches"
    """
    recent = await get_match_history(session, user_id, limit=limit)
    wins = sum(1 for m in recent if m["outcome"] == "win")
    losses = sum(1 for m in recent if m["outcome"] == "loss")
    ties = sum(1 for m in recent if m["outcome"] == "tie")
    return {
        "stats": {"wins": wins, "losses": losses, "ties": ties, "total": wins + losses + ties},
        "recent_matches": recent,
    }
