from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.orm import declarative_base
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from comicstudio.core.config import settings


def make_async_url(url: str) -> str:
    """Convert database URL to async driver format"""
    if "postgresql://" in url and "asyncpg" not in url:
        return url.replace("postgresql://", "postgresql+asyncpg://")
    if "sqlite://" in url and "aiosqlite" not in url:
        return url.replace("sqlite://", "sqlite+aiosqlite://")
    return url


def make_sync_url(url: str) -> str:
    """Convert database URL to sync driver format (Alembic)"""
    if "postgresql+asyncpg://" in url:
        return url.replace("postgresql+asyncpg://", "postgresql://")
    if "sqlite+aiosqlite://" in url:
        return url.replace("sqlite+aiosqlite://", "sqlite://")
    return url


async_database_url = make_async_url(settings.database_url)
async_engine = create_async_engine(async_database_url, echo=settings.debug)
AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

Base = declarative_base()


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker,
    session: Optional[AsyncSession] = None,
) -> AsyncIterator[AsyncSession]:
    """
    Yield a session inside a transaction.

    When ``session`` is given the caller owns the transaction and nothing is
    committed here; otherwise a new session is opened and committed on exit
    (rolled back on error).
    """
    if session is not None:
        yield session
        return

    async with session_factory() as own_session:
        async with own_session.begin():
            yield own_session

