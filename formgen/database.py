"""
Async SQLAlchemy engine and session plumbing.

PostgreSQL (asyncpg) in production; any async SQLAlchemy URL works, which is
how the test suite runs on SQLite.
"""
import logging
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from formgen.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.LOG_LEVEL.upper() == "DEBUG",
    pool_pre_ping=True,
    poolclass=NullPool,
)

# Sessions outlive commits: managers keep working with the rows they loaded
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: one session per request.

    The session is committed when the route returns normally and rolled back
    when it raises, so a FormGenError mapped to a 4xx never leaves half-written
    rows behind.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            logger.warning("Rolled back request session: %s", exc)
            raise


async def init_db() -> None:
    """Create any missing tables.  Alembic owns real migrations."""
    from formgen.models import database_models  # noqa: F401  (registers the mappers)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready (%d tables)", len(Base.metadata.tables))


async def close_db() -> None:
    await engine.dispose()
    logger.info("Database engine disposed")
