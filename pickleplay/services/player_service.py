"""
Player profile service.

Profile lookup and creation, onboarding rating, and rating history reads.
"""

import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pickleplay.database.models import PlayerProfile, RatingHistory
from pickleplay.utils.constants import DEFAULT_RATING, MIN_RATING, MAX_RATING, RATING_DECIMALS
from pickleplay.utils.datetime_utils import utcnow, isoformat_or_none

logger = logging.getLogger(__name__)


def profile_to_dict(profile: PlayerProfile) -> Dict:
    return {
        "user_id": profile.user_id,
        "rating": profile.rating,
        "reliability_pct": profile.reliability_pct,
        "matches_played": profile.matches_played,
        "matches_won": profile.matches_won,
    }


async def get_profile(session: AsyncSession, user_id: str) -> Optional[PlayerProfile]:
    """Get a player's profile, or None if they have never played or onboarded."""
    result = await session.execute(
        select(PlayerProfile).where(PlayerProfile.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_or_create_profile(session: AsyncSession, user_id: str) -> PlayerProfile:
    """
    Get a player's profile, creating one at the default rating if missing.

    Args:
        session: Database session
        user_id: Authenticated user ID

    Returns:
        PlayerProfile (flushed, not committed)
    """
    profile = await get_profile(session, user_id)
    if profile:
        return profile

    profile = PlayerProfile(
        user_id=user_id,
        rating=DEFAULT_RATING,
        reliability_pct=0,
        matches_played=0,
        matches_won=0,
    )
    session.add(profile)
    await session.flush()
    logger.info(f"Created player profile for user {user_id}")
    return profile


async def lock_profiles(session: AsyncSession, user_ids: Sequence[str]) -> Dict[str, PlayerProfile]:
    """
    Load profiles with row locks, creating missing ones first.

    Rows are locked in user_id order so concurrent finalizations of matches
    that share players cannot deadlock.

    Returns:
        Dict of user_id -> PlayerProfile
    """
    ordered_ids = sorted(set(user_ids))
    for user_id in ordered_ids:
        await get_or_create_profile(session, user_id)

    result = await session.execute(
        select(PlayerProfile)
        .where(PlayerProfile.user_id.in_(ordered_ids))
        .order_by(PlayerProfile.user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return {profile.user_id: profile for profile in result.scalars().all()}


async def set_initial_rating(session: AsyncSession, user_id: str, rating: float) -> Dict:
    """
    Set a player's self-assessed rating during onboarding.

    Only allowed before the player's first finalized match.

    Raises:
        ValueError: If rating is outside the scale or the player has already played
    """
    if rating is None or not (MIN_RATING <= float(rating) <= MAX_RATING):
        raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")

    profile = await get_or_create_profile(session, user_id)
    if profile.matches_played > 0:
        raise ValueError("Initial rating can only be set before your first rated match")

    new_rating = round(float(rating), RATING_DECIMALS)
    change = new_rating - profile.rating
    profile.rating = new_rating
    session.add(
        RatingHistory(
            user_id=user_id,
            rating=new_rating,
            rating_change=round(change, RATING_DECIMALS),
            match_id=None,
            recorded_at=utcnow(),
        )
    )
    await session.flush()
    return profile_to_dict(profile)


async def get_rating_history(session: AsyncSession, user_id: str) -> List[Dict]:
    """Get a player's rating history, oldest first."""
    result = await session.execute(
        select(RatingHistory)
        .where(RatingHistory.user_id == user_id)
        .order_by(RatingHistory.recorded_at.asc(), RatingHistory.id.asc())
    )
    return [
        {
            "rating": entry.rating,
            "rating_change": entry.rating_change,
            "match_id": entry.match_id,
            "recorded_at": isoformat_or_none(entry.recorded_at),
        }
        for entry in result.scalars().all()
    ]
