"""
Pickleplay Match Rating API Server

FastAPI server for match completion, peer feedback and skill rating finalization.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import uvicorn
from slowapi import _rate_limit_exceeded_handler  # type: ignore
from slowapi.errors import RateLimitExceeded  # type: ignore

from pickleplay.api.routes import router, limiter as routes_limiter
from pickleplay.database import db
from pickleplay.services.feedback_deadline_service import get_feedback_deadline_service

# Set up logging
# Allow log level to be configured via environment variable (default: INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    # Startup
    logger.info("Starting up Pickleplay Match Rating API...")

    # Initialize database (create tables if they don't exist)
    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        # Don't raise - allow app to start even if initialization fails

    # Start feedback deadline worker (force-finalizes expired matches)
    try:
        deadline_service = get_feedback_deadline_service()
        deadline_service.start()
        logger.info("✓ Feedback deadline worker started")
    except Exception as e:
        logger.error(f"Failed to start feedback deadline worker: {e}", exc_info=True)

    yield  # App is running

    # Shutdown
    logger.info("Shutting down Pickleplay Match Rating API...")

    try:
        deadline_service = get_feedback_deadline_service()
        deadline_service.stop()
        logger.info("✓ Feedback deadline worker stopped")
    except Exception as e:
        logger.error(f"Error stopping feedback deadline worker: {e}", exc_info=True)

    try:
        await db.engine.dispose()
    except Exception as e:
        logger.error(f"Error disposing database engine: {e}", exc_info=True)


app = FastAPI(
    title="Pickleplay Match Rating API",
    description="Match completion, peer feedback and skill rating finalization",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup rate limiter
app.state.limiter = routes_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware; origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


@app.get("/api/health")
async def health():
    """Health check."""
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
