"""
Async database engine and sessions for the match rating service.

PostgreSQL via asyncpg in every deployed environment. A ``sqlite+aiosqlite``
URL is accepted for local runs; pool sizing does not apply there.
"""

import os
from typing import AsyncGenerator, Dict
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine
)
from sqlalchemy.orm import DeclarativeBase
from dotenv import load_dotenv

load_dotenv()


def _postgres_url_from_parts() -> str:
    user = os.getenv("POSTGRES_USER", "pickleplay")
    password = os.getenv("POSTGRES_PASSWORD", "pickleplay")
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    name = os.getenv("POSTGRES_DB", "pickleplay")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"


DATABASE_URL = os.getenv("DATABASE_URL") or _postgres_url_from_parts()


def _engine_options(url: str) -> Dict:
    options = {
        "echo": os.getenv("SQL_ECHO", "false").lower() == "true",
    }
    if not url.startswith("sqlite"):
        # Finalization holds row locks briefly; size the pool for request bursts
        options.update(
            pool_pre_ping=True,
            pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        )
    return options


engine: AsyncEngine = create_async_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

# expire_on_commit=False: services keep using loaded matches after committing
# the completion/finalization status flip
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    """Declarative base for the rating models."""


# Registers the tables on Base.metadata; needs Base to exist first
from pickleplay.database import models  # noqa: F401, E402


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding one session per request.

    Commits when the handler returns, rolls back if it raised. Services that
    commit on their own (complete, feedback, finalize) leave nothing pending.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_database() -> None:
    """Create any missing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)
