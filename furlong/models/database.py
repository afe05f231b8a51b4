"""Database setup and session management."""

import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from furlong.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


def create_engine_for(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; file databases get a busy timeout for concurrent access."""
    connect_args = {}
    if ":memory:" not in database_url:
        connect_args["timeout"] = 30
    return create_async_engine(database_url, echo=echo, connect_args=connect_args)


def session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``bind``."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# Default engine for the configured database file
engine = create_engine_for(settings.database_url, echo=settings.debug)

# Session factory
async_session = session_factory(engine)


async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Initialize the database, creating all tables."""
    # Import models to ensure they're registered with Base
    from furlong.models import calibration  # noqa: F401

    bind = bind or engine
    db_file = bind.url.database
    is_file_db = bool(db_file) and db_file != ":memory:"
    if is_file_db:
        Path(db_file).parent.mkdir(parents=True, exist_ok=True)

    async with bind.begin() as conn:
        if is_file_db:
            # Enable WAL mode and busy timeout for concurrent access
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA busy_timeout=30000"))

        await conn.run_sync(Base.metadata.create_all)

    logger.debug(f"Database initialized: {bind.url}")
