import os

# Must be set before anything imports app.core.config.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SWEEPER_ENABLED", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.clock import ManualClock
from app.core.config import Settings
from app.core.security import create_access_token
from app.models import Base


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        SWEEPER_ENABLED=False,
        RATE_LIMIT_ENABLED=False,
        ACCOUNTING_WEBHOOK_URL="",
    )


@pytest.fixture
def session_factory(tmp_path):
    """
    Throw-away SQLite file per test.  NullPool keeps no connection
    alive between checkouts, so the factory is safe to use from the
    TestClient's event loop as well as the test's own.
    """
    path = tmp_path / "playback.db"
    sync_engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def auth_headers():
    def _headers(user_id: str, *roles: str) -> dict[str, str]:
        token = create_access_token({"sub": user_id, "roles": list(roles)})
        return {"Authorization": f"Bearer {token}"}

    return _headers
