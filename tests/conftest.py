# tests/conftest.py
from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from buyback.adapters.mailer import LoggingMailer
from buyback.api.deps import get_app_settings, get_carrier, get_mailer
from buyback.core.config import AppSettings
from buyback.db.base import create_all
from buyback.db.session import get_session, make_session_maker
from buyback.jobs.context import EngineContext, build_context
from buyback.main import app
from buyback.utils.time import UTC
from tests.fakes import FakeCarrier

# fixed reference time for every scenario
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


# =========================================
# In-memory SQLite per test (StaticPool: one shared connection)
# =========================================
@pytest_asyncio.fixture(scope="function")
async def async_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        future=True,
    )
    await create_all(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(async_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    maker = make_session_maker(async_engine)
    async with maker() as sess:
        yield sess


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(
        _env_file=None,
        SHIPENGINE_API_KEY="test-key",
        OPS_NOTIFICATION_EMAIL="ops@example.com",
        MAIL_BACKEND="log",
        ENABLE_SCHEDULER=False,
    )


@pytest.fixture
def carrier() -> FakeCarrier:
    return FakeCarrier()


@pytest.fixture
def mailer() -> LoggingMailer:
    return LoggingMailer()


@pytest.fixture
def ctx(session: AsyncSession, settings: AppSettings, carrier: FakeCarrier, mailer: LoggingMailer) -> EngineContext:
    return build_context(session, settings, carrier=carrier, mailer=mailer)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def seed(ctx: EngineContext):
    """seed(id=..., status=..., **fields) → stored order document."""

    async def _seed(**doc: Any):
        doc.setdefault("shippingInfo", {"fullName": "Pat Doe", "email": "pat@example.com"})
        return await ctx.store.create(doc, now=NOW)

    return _seed


# =========================================
# FastAPI / httpx AsyncClient (lifespan not run: no scheduler)
# =========================================
@pytest_asyncio.fixture(scope="function")
async def client(
    session: AsyncSession, settings: AppSettings, carrier: FakeCarrier, mailer: LoggingMailer
) -> AsyncGenerator[httpx.AsyncClient, None]:
    async def _session_override() -> AsyncGenerator[AsyncSession, None]:
        yield session

    app.dependency_overrides[get_session] = _session_override
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_carrier] = lambda: carrier
    app.dependency_overrides[get_mailer] = lambda: mailer

    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(
            transport=transport,
            base_url="http://testserver",
            timeout=httpx.Timeout(10.0, connect=5.0, read=10.0, write=5.0, pool=5.0),
        ) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
