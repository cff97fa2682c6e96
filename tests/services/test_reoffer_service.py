# tests/services/test_reoffer_service.py
from datetime import timedelta

import pytest

from buyback.core.errors import IllegalTransition, InvalidRequest
from buyback.services.reoffer_service import expired_device_keys
from buyback.utils.time import iso


@pytest.mark.asyncio
async def test_create_reoffer_sets_deadline_and_notifies(ctx, seed, now, mailer):
    await seed(id="R400", status="received")

    payload = await ctx.reoffers.create_reoffer(
        "R400", new_price="120.50", reasons=["Cracked screen"], comments="Front glass", now=now
    )

    assert payload["status"] == "re-offered-pending"
    assert payload["deviceKey"] == "R400::0"
    assert payload["autoAcceptDate"] == iso(now + timedelta(days=7))
    stored = await ctx.store.get("R400")
    assert stored["reOffer"]["newPrice"] == 120.5
    assert stored["deviceStatusByKey"] == {"R400::0": "re-offered-pending"}
    assert stored["reOfferByDevice"]["R400::0"]["reasons"] == ["Cracked screen"]
    assert [m.subject for m in mailer.sent] == ["Updated offer for order #R400"]


@pytest.mark.asyncio
async def test_create_reoffer_validation(ctx, seed, now):
    await seed(id="R401", status="completed")
    with pytest.raises(InvalidRequest):
        await ctx.reoffers.create_reoffer("R401", new_price=0, reasons=["x"], now=now)
    with pytest.raises(InvalidRequest):
        await ctx.reoffers.create_reoffer("R401", new_price=10, reasons=[], now=now)
    with pytest.raises(IllegalTransition):
        await ctx.reoffers.create_reoffer("R401", new_price=10, reasons=["x"], now=now)


@pytest.mark.asyncio
async def test_accept_then_repeat_is_a_no_op(ctx, seed, now, mailer):
    await seed(id="R402", status="received")
    await ctx.reoffers.create_reoffer("R402", new_price=50, reasons=["Battery"], now=now)

    accepted = await ctx.reoffers.accept_reoffer("R402", now=now)
    assert accepted["status"] == "re-offered-accepted"
    stored = await ctx.store.get("R402")
    assert stored["acceptedAt"] == iso(now)

    repeat = await ctx.reoffers.decline_reoffer("R402", now=now)
    assert repeat["alreadyResolved"] is True
    assert (await ctx.store.get("R402"))["status"] == "re-offered-accepted"
    assert len(mailer.sent) == 2


@pytest.mark.asyncio
async def test_multi_device_order_waits_for_every_device(ctx, seed, now):
    await seed(id="R403", status="received", items=[{"model": "A"}, {"model": "B"}])
    await ctx.reoffers.create_reoffer("R403", new_price=40, reasons=["Scratches"], device_key="0", now=now)

    declined = await ctx.reoffers.decline_reoffer("R403", device_key="R403::0", now=now)
    # device 1 has no outcome yet, so the order keeps its pending status
    assert declined["deviceStatus"] == "re-offered-declined"
    assert declined["status"] == "re-offered-pending"


def test_expired_device_keys_prefers_per_device_offers(now):
    past = iso(now - timedelta(days=1))
    future = iso(now + timedelta(days=1))
    order = {
        "id": "R9",
        "status": "re-offered-pending",
        "deviceStatusByKey": {"R9::0": "re-offered-pending", "R9::1": "re-offered-pending"},
        "reOfferByDevice": {"R9::0": {"autoAcceptDate": future}, "R9::1": {"autoAcceptDate": past}},
        "reOffer": {"autoAcceptDate": past},
    }
    assert expired_device_keys(order, now) == ["R9::1"]


@pytest.mark.asyncio
async def test_auto_accept_after_deadline(ctx, seed, now, mailer):
    await seed(
        id="R404",
        status="re-offered-pending",
        reOffer={"newPrice": 95, "autoAcceptDate": iso(now - timedelta(days=8))},
    )
    order = await ctx.store.get("R404")

    result = await ctx.reoffers.expire_reoffers(order, now=now)

    assert result.expired_keys == ["R404::0"]
    assert result.order["status"] == "re-offered-auto-accepted"
    assert result.order["deviceStatusByKey"] == {"R404::0": "re-offered-auto-accepted"}
    assert "$95.00" in mailer.sent[0].text_body
