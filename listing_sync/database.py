# listing_sync/database.py

from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from listing_sync.core.config import get_settings

Base = declarative_base()


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    url = database_url or get_settings().DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL is not set in environment variables")

    # Plain sqlite URLs need the async driver
    if url.startswith("sqlite:///"):
        url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)

    return create_async_engine(url, echo=False, future=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def get_session(session_factory: async_sessionmaker):
    session = session_factory()
    try:
        yield session
    finally:
        await session.close()
