# tests/db/test_concurrent_merge.py
import asyncio

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm.exc import StaleDataError

from buyback.core.errors import WriteConflict
from buyback.db.base import create_all
from buyback.db.session import make_session_maker
from buyback.services import order_store
from buyback.services.activity_log import ActivityLogWriter
from buyback.services.order_store import SqlOrderStore


@pytest.mark.asyncio
async def test_concurrent_disjoint_writes_all_survive(tmp_path, now):
    # file-backed DB: every session gets its own connection
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}", future=True)
    await create_all(engine)
    maker = make_session_maker(engine)
    try:
        async with maker() as sess:
            await SqlOrderStore(sess).create({"id": "R1", "status": "label_generated"}, now=now)

        async def write(i: int) -> None:
            async with maker() as sess:
                await SqlOrderStore(sess).merge_write(
                    "R1",
                    {f"f{i}": True},
                    log_entries=[ActivityLogWriter.entry("note", f"write {i}")],
                    now=now,
                )

        await asyncio.gather(*(write(i) for i in range(10)))

        async with maker() as sess:
            stored = await SqlOrderStore(sess).get("R1")
    finally:
        await engine.dispose()

    assert sorted(k for k in stored if k.startswith("f")) == sorted(f"f{i}" for i in range(10))
    assert sorted(e["message"] for e in stored["activityLog"]) == sorted(f"write {i}" for i in range(10))
    assert stored["status"] == "label_generated"


@pytest.mark.asyncio
async def test_merge_gives_up_after_repeated_version_conflicts(ctx, seed, now, monkeypatch):
    await seed(id="R2", status="label_generated")
    monkeypatch.setattr(order_store, "MERGE_ATTEMPTS", 3)

    calls = []

    async def stale_commit():
        calls.append(1)
        raise StaleDataError("version mismatch")

    monkeypatch.setattr(ctx.store.session, "commit", stale_commit)
    with pytest.raises(WriteConflict) as err:
        await ctx.store.merge_write("R2", {"note": "x"}, now=now)

    assert len(calls) == 3
    assert err.value.context == {"order_id": "R2", "attempts": 3}
    monkeypatch.undo()
    assert "note" not in await ctx.store.get("R2")
