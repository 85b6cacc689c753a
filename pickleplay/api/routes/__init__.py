"""
API routes - combined router from all domain modules.

Shared infrastructure (limiter, error mapping) lives here; every sub-router
imports what it needs from this package.
"""

import os

from fastapi import APIRouter, HTTPException
from slowapi import Limiter
from slowapi.util import get_remote_address

from pickleplay.services.finalization_service import MatchServiceError

# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------
IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"
if IS_TEST_ENV:
    limiter = Limiter(key_func=get_remote_address)

    def no_op_limit(*args, **kwargs):
        """No-op decorator for test mode - doesn't apply any rate limiting."""
        def decorator(func):
            return func
        return decorator

    limiter.limit = lambda *args, **kwargs: no_op_limit()
else:
    limiter = Limiter(key_func=get_remote_address)

# ---------------------------------------------------------------------------
# Shared error mapping
# ---------------------------------------------------------------------------
STATUS_BY_ERROR_CODE = {
    "invalid_input": 400,
    "forbidden": 403,
    "invalid_state": 400,
    "not_found": 404,
    "conflict": 409,
}


def match_error_response(error: MatchServiceError) -> HTTPException:
    """Translate a match service error into an HTTPException."""
    return HTTPException(
        status_code=STATUS_BY_ERROR_CODE.get(error.code, 400),
        detail={"error": error.code, "message": str(error)},
    )


# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from pickleplay.api.routes.matches import router as matches_router  # noqa: E402
from pickleplay.api.routes.players import router as players_router  # noqa: E402

router = APIRouter()
router.include_router(matches_router)
router.include_router(players_router)
