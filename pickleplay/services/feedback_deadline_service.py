"""
Feedback deadline service - force-finalizes matches whose feedback window expired.

Background worker that polls every minute. Matches still awaiting feedback
after their deadline are finalized with whatever feedback was submitted;
players who never voted simply contribute no consensus.
"""

import asyncio
import logging
import os
from typing import List, Optional

from sqlalchemy import select, and_

from pickleplay.database import db
from pickleplay.database.models import Match, MatchStatus
from pickleplay.services import finalization_service
from pickleplay.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# How often the worker checks for expired feedback windows (seconds)
POLL_INTERVAL_SECONDS = int(os.getenv("FEEDBACK_DEADLINE_POLL_SECONDS", "60"))


class FeedbackDeadlineService:
    """Background service that finalizes matches past their feedback deadline."""

    def __init__(self, poll_interval_seconds: int = POLL_INTERVAL_SECONDS):
        self.poll_interval_seconds = poll_interval_seconds
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        """Start the background deadline worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info("Feedback deadline worker started")

    def stop(self) -> None:
        """Stop the background deadline worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Feedback deadline worker stopped")

    async def _poll_loop(self) -> None:
        """Main loop: process expired matches, then sleep. Repeats until stopped."""
        while not self._stop_event.is_set():
            try:
                await self.process_expired_matches()
            except Exception as e:
                logger.error(f"Error in feedback deadline worker: {e}", exc_info=True)

            # Wait for poll interval or until stop is signalled
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.poll_interval_seconds
                )
                # If wait_for returns normally, stop_event was set → exit
                break
            except asyncio.TimeoutError:
                # Timeout means interval elapsed, loop again
                pass

    async def find_expired_match_ids(self) -> List[int]:
        """IDs of matches still awaiting feedback whose deadline has passed."""
        async with db.AsyncSessionLocal() as session:
            result = await session.execute(
                select(Match.id)
                .where(
                    and_(
                        Match.status == MatchStatus.AWAITING_FEEDBACK,
                        Match.feedback_deadline <= utcnow(),
                    )
                )
                .order_by(Match.feedback_deadline)
            )
            return list(result.scalars().all())

    async def process_expired_matches(self) -> int:
        """
        Force-finalize every expired match, each in its own session.

        A failure on one match is logged and does not stop the others.

        Returns:
            Number of matches finalized by this pass
        """
        match_ids = await self.find_expired_match_ids()
        if not match_ids:
            return 0

        logger.info(f"Found {len(match_ids)} match(es) past their feedback deadline")

        finalized = 0
        for match_id in match_ids:
            try:
                async with db.AsyncSessionLocal() as session:
                    outcome = await finalization_service.try_finalize(
                        session, match_id, force=True
                    )
            except Exception as e:
                logger.error(f"Error finalizing expired match {match_id}: {e}", exc_info=True)
                continue

            if outcome.ok:
                finalized += 1
                logger.info(f"Force-finalized match {match_id} after feedback deadline")
            else:
                logger.info(f"Skipped expired match {match_id}: {outcome.reason}")

        return finalized


# Global singleton
_deadline_service: Optional[FeedbackDeadlineService] = None


def get_feedback_deadline_service() -> FeedbackDeadlineService:
    """Get the global feedback deadline service instance."""
    global _deadline_service
    if _deadline_service is None:
        _deadline_service = FeedbackDeadlineService()
    return _deadline_service
