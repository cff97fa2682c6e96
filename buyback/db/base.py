# buyback/db/base.py
from __future__ import annotations

import importlib
import logging

from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import DeclarativeBase, configure_mappers

log = logging.getLogger("buyback.models")


class Base(DeclarativeBase):
    """Single ORM Base for the service."""

    pass


_INITIALIZED: bool = False

MODEL_MODULES = ("buyback.models.order_document",)


def init_models(*, force: bool = False) -> None:
    """Import every model module once, then configure mappers."""
    global _INITIALIZED
    if _INITIALIZED and not force:
        return
    for mod in MODEL_MODULES:
        importlib.import_module(mod)
    configure_mappers()
    _INITIALIZED = True
    log.info("ORM models initialized (%d modules)", len(MODEL_MODULES))


async def create_all(engine: AsyncEngine) -> None:
    """Create missing tables (dev / tests; production runs alembic)."""
    init_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
