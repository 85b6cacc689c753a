"""Match lifecycle route handlers."""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from pickleplay.api.routes import limiter, match_error_response
from pickleplay.api.auth_dependencies import get_current_user
from pickleplay.database.db import get_db_session
from pickleplay.models.schemas import (
    CreateMatchRequest,
    SetTeamsRequest,
    CompleteMatchRequest,
    SubmitFeedbackRequest,
    MatchResponse,
    CompleteMatchResponse,
    SubmitFeedbackResponse,
    FinalizeResponse,
)
from pickleplay.services import match_service
from pickleplay.services.finalization_service import MatchServiceError, CONFLICT
from pickleplay.utils.constants import MATCH_LIST_LIMIT

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/matches", response_model=MatchResponse)
async def create_match(
    payload: CreateMatchRequest,
    current_user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Schedule a doubles match. The caller hosts and joins team A."""
    try:
        return await match_service.create_match(
            session,
            creator_id=current_user["id"],
            court_id=payload.court_id,
            scheduled_at=payload.scheduled_at,
            duration_minutes=payload.duration_minutes,
            competitive=payload.competitive,
            title=payload.title,
        )
    except MatchServiceError as e:
        raise match_error_response(e)
    except Exception as e:
        logger.error(f"Error creating match: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error creating match")


@router.get("/api/matches", response_model=List[MatchResponse])
async def list_matches(
    limit: int = Query(MATCH_LIST_LIMIT, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Open and awaiting-feedback matches, soonest first, with their teams."""
    try:
        return await match_service.list_matches(session, limit=limit)
    except Exception as e:
        logger.error(f"Error listing matches: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error listing matches")


@router.get("/api/matches/{match_id}", response_model=MatchResponse)
async def get_match(
    match_id: int,
    current_user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get match detail, including who has submitted feedback."""
    try:
        return await match_service.get_match(session, match_id)
    except MatchServiceError as e:
        raise match_error_response(e)
    except Exception as e:
        logger.error(f"Error getting match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting match")


@router.post("/api/matches/{match_id}/join")
async def join_match(
    match_id: int,
    current_user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Join a scheduled match; teams are auto-balanced."""
    try:
        return await match_service.join_match(session, match_id, current_user["id"])
    except MatchServiceError as e:
        raise match_error_response(e)
    except Exception as e:
        logger.error(f"Error joining match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error joining match")


@router.post("/api/matches/{match_id}/leave")
async def leave_match(
    match_id: int,
    current_user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Leave a scheduled match."""
    try:
        removed = await match_service.leave_match(session, match_id, current_user["id"])
        return {"ok": True, "removed": removed}
    except MatchServiceError as e:
        raise match_error_response(e)
    except Exception as e:
        logger.error(f"Error leaving match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error leaving match")


@router.post("/api/matches/{match_id}/set-teams")
async def set_teams(
    match_id: int,
    payload: SetTeamsRequest,
    current_user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Host sets teams explicitly (2 user ids in A, 2 in B)."""
    try:
        return await match_service.set_teams(
            session, match_id, current_user["id"], payload.team_a, payload.team_b
        )
    except MatchServiceError as e:
        raise match_error_response(e)
    except Exception as e:
        logger.error(f"Error setting teams for match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error setting teams")


@router.post("/api/matches/{match_id}/complete", response_model=CompleteMatchResponse)
@limiter.limit("10/minute")
async def complete_match(
    request: Request,
    match_id: int,
    payload: CompleteMatchRequest,
    current_user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Host completes the match.

    Request body:
        {
            "sets": [[11, 8], [9, 11], [11, 6]],
            "winner_team": "A",   // "A" | "B" | "tie"
            "competitive": true
        }

    Returns:
        {"status": "awaiting_feedback", "feedback_deadline": "<ISO-8601>"}
    """
    try:
        return await match_service.complete_match(
            session,
            match_id,
            current_user["id"],
            sets=payload.sets,
            winner_team=payload.winner_team,
            competitive=payload.competitive,
        )
    except MatchServiceError as e:
        raise match_error_response(e)
    except Exception as e:
        logger.error(f"Error completing match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error completing match")


@router.post("/api/matches/{match_id}/feedback", response_model=SubmitFeedbackResponse)
@limiter.limit("30/minute")
async def submit_feedback(
    request: Request,
    match_id: int,
    payload: SubmitFeedbackRequest,
    current_user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Submit peer feedback (higher / correct / lower) about other participants.

    The match is finalized as soon as every participant has voted at least once.
    """
    try:
        return await match_service.submit_feedback(
            session,
            match_id,
            current_user["id"],
            [vote.model_dump() for vote in payload.votes],
        )
    except MatchServiceError as e:
        raise match_error_response(e)
    except Exception as e:
        logger.error(f"Error submitting feedback for match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error submitting feedback")


@router.post("/api/matches/{match_id}/finalize", response_model=FinalizeResponse)
async def finalize_match(
    match_id: int,
    current_user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Host force-finalizes the match without waiting for quorum or the deadline."""
    try:
        result = await match_service.finalize_match(session, match_id, current_user["id"])
    except MatchServiceError as e:
        raise match_error_response(e)
    except Exception as e:
        logger.error(f"Error finalizing match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error finalizing match")

    if result["ok"]:
        return result
    status_code = 409 if result.get("reason") == CONFLICT else 400
    return JSONResponse(status_code=status_code, content=result)
