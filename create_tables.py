# create_tables.py
# dev helper: create the schema straight from the models (production runs alembic)
import asyncio

from buyback.db.base import create_all
from buyback.db.session import async_engine, close_engines


async def _main() -> None:
    print("Creating tables...")
    await create_all(async_engine)
    await close_engines()
    print("Tables ready.")


if __name__ == "__main__":
    asyncio.run(_main())
