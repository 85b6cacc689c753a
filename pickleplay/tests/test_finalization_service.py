"""
Tests for finalization_service - quorum, deadline, forced finalization,
rating writes and the compare-and-set status transition.
"""

import pytest
from datetime import timedelta
from sqlalchemy import select, update, func

from pickleplay.database import db
from pickleplay.database.models import (
    Match,
    MatchPlayer,
    MatchStatus,
    PlayerProfile,
    RatingHistory,
    Team,
)
from pickleplay.services import finalization_service, match_service
from pickleplay.services.finalization_service import (
    FinalizeResult,
    FinalizationIntegrityError,
    MatchNotFoundError,
    BAD_TEAMS,
    CONFLICT,
    NOT_AWAITING,
    WAITING_FOR_FEEDBACK,
)
from pickleplay.utils.datetime_utils import utcnow

TEAM_A = ["user-1", "user-3"]
TEAM_B = ["user-2", "user-4"]
PLAYERS = TEAM_A + TEAM_B


async def _profiles(session):
    result = await session.execute(
        select(PlayerProfile).execution_options(populate_existing=True)
    )
    return {p.user_id: p for p in result.scalars().all()}


async def _history_count(session):
    result = await session.execute(select(func.count()).select_from(RatingHistory))
    return result.scalar()


async def _status(session, match_id):
    match = await finalization_service.get_match_or_raise(session, match_id)
    return match.status


async def _vote_correct(session, match_id, from_user_id):
    """Vote 'correct' about one teammate or opponent."""
    about = next(u for u in PLAYERS if u != from_user_id)
    return await match_service.submit_feedback(
        session, match_id, from_user_id, [{"about_user_id": about, "vote": "correct"}]
    )


# ============================================================================
# Pure helpers
# ============================================================================


def test_has_feedback_quorum():
    assert finalization_service.has_feedback_quorum(PLAYERS, set(PLAYERS))
    assert not finalization_service.has_feedback_quorum(PLAYERS, set(PLAYERS[:3]))
    assert finalization_service.has_feedback_quorum(PLAYERS, set(PLAYERS) | {"extra"})


def test_finalize_result_to_dict():
    assert FinalizeResult(ok=True).to_dict() == {"ok": True}
    assert FinalizeResult(ok=False, reason=CONFLICT).to_dict() == {"ok": False, "reason": "conflict"}


def test_match_status_transitions():
    assert MatchStatus.SCHEDULED.can_transition_to(MatchStatus.AWAITING_FEEDBACK)
    assert MatchStatus.AWAITING_FEEDBACK.can_transition_to(MatchStatus.FINALIZED)
    assert not MatchStatus.SCHEDULED.can_transition_to(MatchStatus.FINALIZED)
    assert not MatchStatus.FINALIZED.can_transition_to(MatchStatus.AWAITING_FEEDBACK)
    assert MatchStatus.FINALIZED.is_terminal
    assert not MatchStatus.SCHEDULED.is_terminal


# ============================================================================
# Eligibility
# ============================================================================


@pytest.mark.asyncio
async def test_not_awaiting_writes_nothing(db_session, make_full_match):
    match_id = await make_full_match()

    result = await finalization_service.try_finalize(db_session, match_id, force=True)

    assert result == FinalizeResult(ok=False, reason=NOT_AWAITING)
    assert await _status(db_session, match_id) == MatchStatus.SCHEDULED
    assert await _history_count(db_session) == 0
    profiles = await _profiles(db_session)
    assert all(p.rating == 3.0 and p.matches_played == 0 for p in profiles.values())


@pytest.mark.asyncio
async def test_unknown_match_raises_not_found(db_session):
    with pytest.raises(MatchNotFoundError):
        await finalization_service.try_finalize(db_session, 12345)


@pytest.mark.asyncio
async def test_three_of_four_submissions_wait(db_session, make_completed_match):
    match_id = await make_completed_match()

    for user_id in PLAYERS[:3]:
        response = await _vote_correct(db_session, match_id, user_id)
        assert response == {"finalized": False, "reason": WAITING_FOR_FEEDBACK}

    assert await _status(db_session, match_id) == MatchStatus.AWAITING_FEEDBACK
    assert await _history_count(db_session) == 0


@pytest.mark.asyncio
async def test_fourth_submission_finalizes(db_session, make_completed_match):
    match_id = await make_completed_match()

    for user_id in PLAYERS[:3]:
        await _vote_correct(db_session, match_id, user_id)
    response = await _vote_correct(db_session, match_id, PLAYERS[3])

    assert response == {"finalized": True}
    assert await _status(db_session, match_id) == MatchStatus.FINALIZED
    assert await _history_count(db_session) == 4


@pytest.mark.asyncio
async def test_deadline_passed_finalizes_without_quorum(db_session, make_completed_match, monkeypatch):
    match_id = await make_completed_match()
    await _vote_correct(db_session, match_id, PLAYERS[0])

    assert (await finalization_service.try_finalize(db_session, match_id)).reason == WAITING_FOR_FEEDBACK

    later = utcnow() + timedelta(hours=25)
    monkeypatch.setattr(finalization_service, "utcnow", lambda: later)

    result = await finalization_service.try_finalize(db_session, match_id)
    assert result.ok is True
    assert await _status(db_session, match_id) == MatchStatus.FINALIZED


@pytest.mark.asyncio
async def test_forced_finalize_is_idempotent(db_session, make_completed_match):
    match_id = await make_completed_match()

    first = await finalization_service.try_finalize(db_session, match_id, force=True)
    ratings_after_first = {u: p.rating for u, p in (await _profiles(db_session)).items()}
    second = await finalization_service.try_finalize(db_session, match_id, force=True)

    assert first.ok is True
    assert second == FinalizeResult(ok=False, reason=NOT_AWAITING)
    assert await _history_count(db_session) == 4
    assert {u: p.rating for u, p in (await _profiles(db_session)).items()} == ratings_after_first
    assert all(p.matches_played == 1 for p in (await _profiles(db_session)).values())


@pytest.mark.asyncio
async def test_bad_teams_writes_nothing(db_session, make_completed_match):
    match_id = await make_completed_match()
    await db_session.execute(
        update(MatchPlayer)
        .where(MatchPlayer.match_id == match_id, MatchPlayer.user_id == "user-2")
        .values(team=Team.A)
    )
    await db_session.commit()

    result = await finalization_service.try_finalize(db_session, match_id, force=True)

    assert result == FinalizeResult(ok=False, reason=BAD_TEAMS)
    assert await _status(db_session, match_id) == MatchStatus.AWAITING_FEEDBACK
    assert await _history_count(db_session) == 0


# ============================================================================
# Rating writes
# ============================================================================


@pytest.mark.asyncio
async def test_worked_example_ratings(db_session, make_completed_match):
    """Even teams, A wins 11-8, 9-11, 11-6 with no feedback."""
    match_id = await make_completed_match(sets=[[11, 8], [9, 11], [11, 6]], winner_team="A")

    result = await finalization_service.try_finalize(db_session, match_id, force=True)
    assert result.ok is True

    profiles = await _profiles(db_session)
    for user_id in TEAM_A:
        assert profiles[user_id].rating == pytest.approx(3.039)
        assert profiles[user_id].matches_won == 1
    for user_id in TEAM_B:
        assert profiles[user_id].rating == pytest.approx(2.961)
        assert profiles[user_id].matches_won == 0
    for profile in profiles.values():
        assert profile.matches_played == 1
        # No votes means no dispute
        assert profile.reliability_pct == 6

    history = (
        await db_session.execute(select(RatingHistory).where(RatingHistory.match_id == match_id))
    ).scalars().all()
    changes = {h.user_id: h.rating_change for h in history}
    assert changes == {
        "user-1": pytest.approx(0.039),
        "user-3": pytest.approx(0.039),
        "user-2": pytest.approx(-0.039),
        "user-4": pytest.approx(-0.039),
    }

    match = (
        await db_session.execute(
            select(Match).where(Match.id == match_id).execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert match.finalized_at is not None


@pytest.mark.asyncio
async def test_peer_consensus_adjusts_rating_and_reliability(db_session, make_completed_match):
    """Votes higher, correct, higher about user-3 add 0.02 * 2/3 to their delta."""
    match_id = await make_completed_match(sets=[[11, 8], [9, 11], [11, 6]], winner_team="A")

    votes_about_user_3 = {"user-1": "higher", "user-2": "correct", "user-4": "higher"}
    for from_user_id, vote in votes_about_user_3.items():
        await match_service.submit_feedback(
            db_session, match_id, from_user_id, [{"about_user_id": "user-3", "vote": vote}]
        )
    response = await match_service.submit_feedback(
        db_session, match_id, "user-3", [{"about_user_id": "user-1", "vote": "correct"}]
    )
    assert response == {"finalized": True}

    profiles = await _profiles(db_session)
    assert profiles["user-3"].rating == pytest.approx(3.052)
    assert profiles["user-3"].reliability_pct == 2  # disputed (consensus 0.667)
    assert profiles["user-1"].rating == pytest.approx(3.039)
    assert profiles["user-1"].reliability_pct == 6  # consensus 0
    assert profiles["user-2"].rating == pytest.approx(2.961)


@pytest.mark.asyncio
async def test_friendly_match_counts_but_does_not_rate(db_session, make_completed_match):
    match_id = await make_completed_match(sets=[[11, 0], [11, 0]], winner_team="B", competitive=False)

    result = await finalization_service.try_finalize(db_session, match_id, force=True)
    assert result.ok is True

    profiles = await _profiles(db_session)
    for profile in profiles.values():
        assert profile.rating == 3.0
        assert profile.reliability_pct == 0
        assert profile.matches_played == 1
    assert profiles["user-2"].matches_won == 1
    assert profiles["user-1"].matches_won == 0
    assert await _history_count(db_session) == 4


@pytest.mark.asyncio
async def test_tie_between_even_teams_keeps_ratings(db_session, make_completed_match):
    match_id = await make_completed_match(sets=[[11, 9], [9, 11]], winner_team="tie")

    assert (await finalization_service.try_finalize(db_session, match_id, force=True)).ok

    profiles = await _profiles(db_session)
    assert all(p.rating == 3.0 for p in profiles.values())
    assert all(p.matches_won == 0 for p in profiles.values())


@pytest.mark.asyncio
async def test_ratings_stay_in_bounds(db_session, make_completed_match):
    match_id = await make_completed_match(sets=[[11, 0]], winner_team="A")
    await db_session.execute(
        update(PlayerProfile).where(PlayerProfile.user_id.in_(TEAM_A)).values(rating=7.0)
    )
    await db_session.execute(
        update(PlayerProfile).where(PlayerProfile.user_id.in_(TEAM_B)).values(rating=0.0)
    )
    await db_session.commit()

    # Upset in reverse: the weak team wins by a blowout
    await db_session.execute(
        update(Match).where(Match.id == match_id).values(result={"sets": [[0, 11]], "winner_team": "B"})
    )
    await db_session.commit()

    assert (await finalization_service.try_finalize(db_session, match_id, force=True)).ok

    profiles = await _profiles(db_session)
    assert all(0.0 <= p.rating <= 7.0 for p in profiles.values())
    assert profiles["user-2"].rating > 0.0
    assert profiles["user-1"].rating < 7.0


# ============================================================================
# Concurrency and failure
# ============================================================================


@pytest.mark.asyncio
async def test_claim_for_finalization_only_once(db_session, make_completed_match):
    match_id = await make_completed_match()
    now = utcnow()

    assert await finalization_service.claim_for_finalization(db_session, match_id, now) is True
    assert await finalization_service.claim_for_finalization(db_session, match_id, now) is False
    await db_session.rollback()


@pytest.mark.asyncio
async def test_concurrent_finalize_loser_gets_conflict(db_session, make_completed_match, monkeypatch):
    """Another request finalizes between our eligibility check and our claim."""
    match_id = await make_completed_match()
    original_claim = finalization_service.claim_for_finalization
    raced = []

    async def racing_claim(session, claimed_match_id, now):
        if not raced:
            raced.append(claimed_match_id)
            async with db.AsyncSessionLocal() as other_session:
                winner = await finalization_service.try_finalize(other_session, claimed_match_id, force=True)
            assert winner.ok is True
        return await original_claim(session, claimed_match_id, now)

    monkeypatch.setattr(finalization_service, "claim_for_finalization", racing_claim)

    loser = await finalization_service.try_finalize(db_session, match_id, force=True)

    assert loser == FinalizeResult(ok=False, reason=CONFLICT)
    assert await _status(db_session, match_id) == MatchStatus.FINALIZED
    # Ratings were applied exactly once
    assert await _history_count(db_session) == 4
    profiles = await _profiles(db_session)
    assert all(p.matches_played == 1 for p in profiles.values())


@pytest.mark.asyncio
async def test_failure_after_claim_rolls_back(db_session, make_completed_match, monkeypatch):
    match_id = await make_completed_match()

    async def broken_apply(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(finalization_service, "_apply_ratings", broken_apply)

    with pytest.raises(FinalizationIntegrityError):
        await finalization_service.try_finalize(db_session, match_id, force=True)

    assert await _status(db_session, match_id) == MatchStatus.AWAITING_FEEDBACK
    assert await _history_count(db_session) == 0
