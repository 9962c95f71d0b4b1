"""Database session management with async SQLAlchemy."""
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from metered_billing.config import settings


def create_engine(database_url: str, **kwargs) -> AsyncEngine:  # noqa: ANN003
    """
    Create an async engine.

    Postgres URLs get the production pool settings; other backends
    (SQLite in tests) use the driver defaults.
    """
    if database_url.startswith("postgresql"):
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_size", 20)
        kwargs.setdefault("max_overflow", 10)
    return create_async_engine(database_url, echo=settings.debug, **kwargs)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to an engine."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


# Create async engine
engine = create_engine(str(settings.database_url))

# Create async session factory
AsyncSessionLocal = create_session_factory(engine)


@asynccontextmanager
async def get_session(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a transactional session.

    Commits when the block exits cleanly and rolls back on error.

    Yields:
        AsyncSession: Database session for one unit of work
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# Declarative base for all models
Base = declarative_base()
