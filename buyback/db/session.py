# buyback/db/session.py
# async engine / session factory + FastAPI dependency (get_session)
from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from buyback.core.config import get_settings

log = logging.getLogger("buyback.db")


# ---- DSN normalization: psycopg3 for postgres, aiosqlite for sqlite ----
def normalize_async_dsn(url: str) -> str:
    url = (url or "").strip()
    if (url.startswith('"') and url.endswith('"')) or (url.startswith("'") and url.endswith("'")):
        url = url[1:-1].strip()
    if not url:
        return "sqlite+aiosqlite:///./buyback.db"
    # sqlite:/// → sqlite+aiosqlite:///
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite://" + url[len("sqlite:///") - 1 :]
    # postgres/postgresql(+*) → postgresql+psycopg
    if url.startswith("postgresql+asyncpg://") or url.startswith("postgres+asyncpg://"):
        return re.sub(r"^postgres(?:ql)?\+asyncpg://", "postgresql+psycopg://", url)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def make_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    return create_async_engine(
        normalize_async_dsn(url),
        future=True,
        echo=echo,
        pool_pre_ping=True,
    )


def make_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


_settings = get_settings()
ASYNC_URL = normalize_async_dsn(_settings.DATABASE_URL)
log.debug("Using DSN (async): %s", ASYNC_URL)

async_engine: AsyncEngine = make_engine(ASYNC_URL, echo=_settings.SQL_ECHO)
AsyncSessionLocal: async_sessionmaker[AsyncSession] = make_session_maker(async_engine)


# ---- FastAPI dependency ----
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


async def close_engines() -> None:
    await async_engine.dispose()
