"""
Engine and session factory for the message store.

URLs are given in their sync form (as in DATABASE_URL) and mapped to an
async driver: sqlite:// → sqlite+aiosqlite://. URLs that already name an
async driver pass through untouched.
"""
from __future__ import annotations

import structlog

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
}


def _to_async_url(db_url: str) -> str:
    for sync_prefix, async_prefix in _ASYNC_DRIVERS.items():
        if db_url.startswith(sync_prefix):
            return async_prefix + db_url[len(sync_prefix):]
    return db_url


def _engine_kwargs(db_url: str, debug: bool = False) -> dict:
    if db_url.startswith("sqlite"):
        return {"echo": debug, "connect_args": {"check_same_thread": False}}
    return {"echo": debug, "pool_size": 5, "pool_pre_ping": True}


def create_engine(db_url: str, debug: bool = False) -> AsyncEngine:
    url = _to_async_url(db_url)
    engine = create_async_engine(url, **_engine_kwargs(url, debug))
    logger.info("database_engine_created",
                dialect=engine.dialect.name,
                url=str(engine.url).split("@")[-1])
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
