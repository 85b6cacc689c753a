"""Player profile and rating history route handlers."""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pickleplay.api.auth_dependencies import get_current_user
from pickleplay.database.db import get_db_session
from pickleplay.models.schemas import (
    InitialRatingRequest,
    PlayerProfileResponse,
    RatingHistoryEntryResponse,
    MatchHistoryEntryResponse,
    MyMatchesResponse,
)
from pickleplay.services import match_service, player_service
from pickleplay.utils.constants import MATCH_HISTORY_LIMIT

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/players/me", response_model=PlayerProfileResponse)
async def get_my_profile(
    current_user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get the caller's rating profile, creating it at the default rating if needed."""
    try:
        profile = await player_service.get_or_create_profile(session, current_user["id"])
        return player_service.profile_to_dict(profile)
    except Exception as e:
        logger.error(f"Error getting profile: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting profile")


@router.post("/api/players/me/initial-rating", response_model=PlayerProfileResponse)
async def set_initial_rating(
    payload: InitialRatingRequest,
    current_user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Onboarding: set a self-assessed starting rating (0-7) before the first match."""
    try:
        return await player_service.set_initial_rating(session, current_user["id"], payload.rating)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error setting initial rating: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error setting initial rating")


@router.get("/api/me/matches", response_model=MyMatchesResponse)
async def get_my_matches(
    limit: int = Query(MATCH_HISTORY_LIMIT, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """The caller's recent finalized matches with a wins/losses/ties summary."""
    try:
        return await match_service.get_my_matches(session, current_user["id"], limit=limit)
    except Exception as e:
        logger.error(f"Error getting recent matches: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting recent matches")


@router.get("/api/ratings/history/{user_id}", response_model=List[RatingHistoryEntryResponse])
async def get_rating_history(
    user_id: str,
    session: AsyncSession = Depends(get_db_session),
):
    """Rating snapshots for charting, oldest first."""
    try:
        return await player_service.get_rating_history(session, user_id)
    except Exception as e:
        logger.error(f"Error getting rating history for {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting rating history")


@router.get("/api/players/{user_id}/matches", response_model=List[MatchHistoryEntryResponse])
async def get_match_history(
    user_id: str,
    limit: int = Query(MATCH_HISTORY_LIMIT, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Recent finalized matches for a player with win/loss/tie outcome."""
    try:
        return await match_service.get_match_history(session, user_id, limit=limit)
    except Exception as e:
        logger.error(f"Error getting match history for {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting match history")
