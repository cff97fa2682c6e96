# alembic/env.py
from __future__ import annotations

import os
import re
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

from buyback.db.base import Base, init_models  # noqa: E402

# async drivers → their sync counterparts (migrations run on a sync engine)
_ASYNC_DRV_RE = re.compile(r"\+aiosqlite\b|\+asyncpg\b|\+psycopg2\b|\+pg8000\b", re.I)


def normalize_sync_url(url: str) -> str:
    url = (url or "").strip()
    if (url.startswith('"') and url.endswith('"')) or (url.startswith("'") and url.endswith("'")):
        url = url[1:-1].strip()
    if url.lower().startswith("sqlite"):
        return _ASYNC_DRV_RE.sub("", url)
    url = _ASYNC_DRV_RE.sub("+psycopg", url)
    url = re.sub(r"^postgres://", "postgresql+psycopg://", url, flags=re.I)
    if url.lower().startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def get_url() -> str:
    """
    DSN priority:
      1. BUYBACK_MIGRATION_DATABASE_URL
      2. DATABASE_URL
      3. sqlalchemy.url in alembic.ini
    """
    url = (
        os.getenv("BUYBACK_MIGRATION_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
    )
    if not url:
        raise RuntimeError("Alembic needs DATABASE_URL or sqlalchemy.url in alembic.ini")
    return normalize_sync_url(url)


def run_migrations_offline() -> None:
    init_models()
    context.configure(
        url=get_url(),
        target_metadata=Base.metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    init_models()
    url = get_url()
    engine = create_engine(url, poolclass=NullPool, future=True)
    with engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=Base.metadata,
            compare_type=True,
            render_as_batch=url.startswith("sqlite"),
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
