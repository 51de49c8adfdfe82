# asyncpg 엔진, 세션 팩토리, FastAPI DB 의존성

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from notesearch.config import get_settings

settings = get_settings()

# The search endpoint runs two adapters per request, each on its own connection
engine = create_async_engine(
    settings.async_database_url,
    echo=settings.DB_ECHO,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for work notes, embeddings and the retry queue."""


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session, committed on success and rolled back on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency for code that opens its own sessions.

    The hybrid search runs its adapters concurrently, and an AsyncSession
    must not be shared between tasks.
    """
    return async_session_factory
