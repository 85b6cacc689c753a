"""
Shared pytest configuration for pickleplay tests.

Uses PostgreSQL when TEST_DATABASE_URL is set, for consistency with production.
Otherwise falls back to a throwaway SQLite file per test (row locks are a
no-op there, everything else behaves the same).

SAFETY: This module REFUSES to run against any PostgreSQL database whose name
does not contain the substring "test".
"""

import os

# Rate limiting is disabled when ENV=test; must be set before the app is imported.
os.environ.setdefault("ENV", "test")

import asyncio  # noqa: E402
from datetime import timedelta  # noqa: E402

import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from pickleplay.database import db  # noqa: E402
from pickleplay.database.db import Base  # noqa: E402
from pickleplay.services import match_service  # noqa: E402
from pickleplay.utils.datetime_utils import utcnow  # noqa: E402


def _resolve_test_database_url(tmp_path) -> str:
    """Build the test database URL with safety checks.

    Raises ``RuntimeError`` if a configured URL does not point to a database
    whose name contains "test".
    """
    url = os.getenv("TEST_DATABASE_URL", "")
    if not url:
        return f"sqlite+aiosqlite:///{tmp_path / 'pickleplay_test.db'}"

    # ── Safety gate: database name MUST contain "test" ──────────────────
    db_name = url.rsplit("/", 1)[-1].split("?")[0]  # strip query params
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"\n{'=' * 70}\n"
            f"  SAFETY: Refusing to run tests against database '{db_name}'.\n"
            f"  The database name must contain 'test' to prevent accidental\n"
            f"  data loss in development or production databases.\n\n"
            f"  Resolved URL: {url}\n"
            f"{'=' * 70}"
        )
    return url


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a fresh schema for each test and point db.AsyncSessionLocal at it."""
    # Use NullPool to avoid connection reuse issues across event loops
    engine = create_async_engine(
        _resolve_test_database_url(tmp_path),
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Code that opens its own sessions (the deadline worker) goes through
    # db.AsyncSessionLocal, so it has to see the test database too
    test_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = test_session_maker

    yield engine

    db.AsyncSessionLocal = original_async_session_local

    try:
        await asyncio.sleep(0.05)  # Small delay to let connections finish
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine):
    """Database session bound to the per-test engine."""
    async_session_maker = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


# ---------------------------------------------------------------------------
# Match fixtures
# ---------------------------------------------------------------------------
# Auto-balancing puts user-1 (host) and user-3 on team A, user-2 and user-4 on B.

PLAYERS = ["user-1", "user-2", "user-3", "user-4"]


@pytest_asyncio.fixture
async def make_full_match(db_session):
    """Factory: scheduled match with four players split 2v2. Returns the match id."""

    async def _make(competitive=True):
        created = await match_service.create_match(
            db_session,
            creator_id=PLAYERS[0],
            court_id=7,
            scheduled_at=utcnow() - timedelta(hours=2),
            competitive=competitive,
            title="Tuesday doubles",
        )
        for user_id in PLAYERS[1:]:
            await match_service.join_match(db_session, created["id"], user_id)
        await db_session.commit()
        return created["id"]

    return _make


@pytest_asyncio.fixture
async def make_completed_match(db_session, make_full_match):
    """Factory: match completed by the host and awaiting feedback. Returns the match id."""

    async def _make(sets=None, winner_team="A", competitive=True):
        match_id = await make_full_match(competitive=competitive)
        await match_service.complete_match(
            db_session,
            match_id,
            PLAYERS[0],
            sets=[[11, 8], [9, 11], [11, 6]] if sets is None else sets,
            winner_team=winner_team,
            competitive=competitive,
        )
        return match_id

    return _make
