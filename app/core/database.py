"""
Async database engine & per-request session dependency.

The engine is created once at import time from `settings.DATABASE_URL`.
`create_app` may swap in a different session factory (tests point it at
a throw-away SQLite file) — `get_db` always reads the factory from
`app.state` so routes never need to know which one is active.
"""

from collections.abc import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=False, pool_pre_ping=True)

SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """
    FastAPI dependency — one session per request.

    Commits when the handler returns normally, rolls back on any
    exception so a failed request never leaves partial writes behind.
    """
    session_factory = getattr(request.app.state, "session_factory", SessionLocal)
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
