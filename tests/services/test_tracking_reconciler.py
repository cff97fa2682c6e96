# tests/services/test_tracking_reconciler.py
from datetime import timedelta

import pytest

from buyback.core.errors import CredentialsMissing, InvalidRequest, OrderNotFound, TrackingUnavailable
from buyback.domain.statuses import OrderStatus
from buyback.services.tracking_normalizer import snapshot_of
from buyback.services.tracking_reconciler import (
    INBOUND_MODE,
    describe_cooldown,
    derive_inbound_status_update,
)
from buyback.utils.time import iso
from tests.fakes import tracking

KIT = "Shipping Kit Requested"
EMAIL_LABEL = "Email Label Requested"


# ---------------- pure helpers ----------------


def test_cooldown_message_rounds_up_to_minutes(now):
    order = {"labelTrackingLastSyncedAt": iso(now - timedelta(minutes=3, seconds=20))}
    msg = describe_cooldown(order, INBOUND_MODE, now=now, interval=timedelta(minutes=10))
    assert msg == "Inbound tracking was refreshed recently. Try again in about 7 minutes."
    assert describe_cooldown(order, INBOUND_MODE, now=now + timedelta(minutes=7), interval=timedelta(minutes=10)) is None
    assert describe_cooldown({}, INBOUND_MODE, now=now, interval=timedelta(minutes=10)) is None


def test_kit_order_delivery_needs_explicit_receive():
    order = {"id": "K1", "status": "kit_on_the_way_to_us", "shippingPreference": KIT}
    update = derive_inbound_status_update(order, snapshot_of(tracking("DE")))
    assert update.next_status is OrderStatus.DELIVERED_TO_US
    assert update.mark_kit_delivered and not update.auto_receive


def test_email_label_delivery_auto_receives():
    order = {"id": "E1", "status": "phone_on_the_way", "shippingPreference": EMAIL_LABEL}
    update = derive_inbound_status_update(order, snapshot_of(tracking("DE")))
    assert update.next_status is OrderStatus.DELIVERED_TO_US
    assert update.auto_receive


def test_delivery_without_shipping_preference_is_not_auto_received():
    order = {"id": "X1", "status": "phone_on_the_way"}
    update = derive_inbound_status_update(order, snapshot_of(tracking("DE")))
    assert update.next_status is OrderStatus.DELIVERED_TO_US
    assert not update.auto_receive


def test_no_movement_never_resets_a_locked_status():
    order = {"id": "E1", "status": "phone_on_the_way", "shippingPreference": EMAIL_LABEL}
    assert derive_inbound_status_update(order, snapshot_of(tracking("NY"))) is None


# ---------------- inbound sync ----------------


@pytest.mark.asyncio
async def test_inbound_in_transit_moves_label_order_forward(ctx, carrier, seed, now, mailer):
    order = await seed(
        id="E100", status="label_generated", shippingPreference=EMAIL_LABEL, trackingNumber="9400E100"
    )
    carrier.tracking_replies["9400E100"] = tracking("IT", "In Transit", estimated_delivery="2026-03-04")

    result = await ctx.reconciler.sync_inbound_tracking(order, now=now)

    assert result.applied
    assert result.order["status"] == "phone_on_the_way"
    assert result.order["labelTrackingStatus"] == "IT"
    assert result.order["labelTrackingLastSyncedAt"] == iso(now)
    entry = result.order["activityLog"][-1]
    assert entry["type"] == "status"
    assert entry["metadata"] == {"trackingNumber": "9400E100", "source": "inbound_tracking"}
    assert carrier.tracking_calls == [("9400E100", "stamps_com")]
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_inbound_delivery_receives_and_notifies_once(ctx, carrier, seed, now, mailer):
    order = await seed(
        id="E101", status="phone_on_the_way", shippingPreference=EMAIL_LABEL, trackingNumber="9400E101"
    )
    carrier.tracking_replies["9400E101"] = tracking("DE", "Delivered")

    result = await ctx.reconciler.sync_inbound_tracking(order, now=now)
    assert result.order["status"] == "delivered_to_us"
    assert result.notified

    stored = await ctx.store.get("E101")
    assert stored["receivedAt"] == iso(now)
    assert stored["autoReceived"] is True
    assert stored["labelDeliveredAt"] == iso(now)
    assert stored["receivedNotificationSentAt"] == iso(now)
    assert [m.recipient for m in mailer.sent] == ["pat@example.com"]

    # a second delivered read is a no-op: no status change, no second mail
    again = await ctx.reconciler.sync_inbound_tracking(stored, force=True, now=now + timedelta(hours=1))
    assert not again.applied
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_delivery_without_shipping_preference_waits_for_manual_receive(ctx, carrier, seed, now, mailer):
    order = await seed(id="X101", status="phone_on_the_way", trackingNumber="9400X101")
    carrier.tracking_replies["9400X101"] = tracking("DE", "Delivered")

    result = await ctx.reconciler.sync_inbound_tracking(order, now=now)
    assert result.applied
    assert result.order["status"] == "delivered_to_us"
    assert not result.notified

    stored = await ctx.store.get("X101")
    assert "receivedAt" not in stored
    assert "autoReceived" not in stored
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_stale_read_never_moves_status_backwards(ctx, carrier, seed, now):
    order = await seed(
        id="E102", status="delivered_to_us", shippingPreference=EMAIL_LABEL, trackingNumber="9400E102"
    )
    carrier.tracking_replies["9400E102"] = tracking("IT", "In Transit")

    result = await ctx.reconciler.sync_inbound_tracking(order, now=now)

    assert not result.applied
    assert result.order["status"] == "delivered_to_us"
    assert result.order["labelTrackingStatus"] == "IT"


@pytest.mark.asyncio
async def test_cooldown_skips_without_carrier_call(ctx, carrier, seed, now):
    order = await seed(
        id="E103",
        status="label_generated",
        shippingPreference=EMAIL_LABEL,
        trackingNumber="9400E103",
        labelTrackingLastSyncedAt=iso(now - timedelta(minutes=2)),
    )

    result = await ctx.reconciler.sync_inbound_tracking(order, now=now)

    assert result.skipped == "recently_refreshed"
    assert "8 minutes" in result.reason
    assert carrier.tracking_calls == []

    forced = await ctx.reconciler.sync_inbound_tracking(order, force=True, now=now)
    assert forced.skipped == "no_data"
    assert len(carrier.tracking_calls) == 1


@pytest.mark.asyncio
async def test_balance_email_orders_are_not_tracked(ctx, carrier, seed, now):
    order = await seed(
        id="E104",
        status="emailed",
        trackingNumber="9400E104",
        lastConditionEmailReason="outstanding_balance",
    )
    result = await ctx.reconciler.sync_inbound_tracking(order, now=now)
    assert result.skipped == "not_trackable"
    assert carrier.tracking_calls == []


@pytest.mark.asyncio
async def test_missing_credentials_raise(ctx, carrier, seed, now):
    carrier.configured = False
    order = await seed(id="E105", status="label_generated", trackingNumber="9400E105")
    with pytest.raises(CredentialsMissing):
        await ctx.reconciler.sync_inbound_tracking(order, now=now)


@pytest.mark.asyncio
async def test_carrier_errors_propagate(ctx, carrier, seed, now):
    order = await seed(id="E106", status="label_generated", trackingNumber="9400E106")
    carrier.tracking_replies["9400E106"] = TrackingUnavailable("Carrier tracking request timed out.")
    with pytest.raises(TrackingUnavailable):
        await ctx.reconciler.sync_inbound_tracking(order, now=now)
    assert (await ctx.store.get("E106"))["status"] == "label_generated"


@pytest.mark.asyncio
async def test_sync_label_tracking_payloads(ctx, carrier, seed, now):
    await seed(id="E107", status="received", trackingNumber="9400E107")
    skipped = await ctx.reconciler.sync_label_tracking("E107", now=now)
    assert skipped == {"skipped": True, "reason": "Order already received/completed. Tracking refresh skipped."}

    await seed(id="E108", status="label_generated", shippingPreference=EMAIL_LABEL, trackingNumber="9400E108")
    carrier.tracking_replies["9400E108"] = tracking("IT", "In Transit")
    payload = await ctx.reconciler.sync_label_tracking("E108", now=now)
    assert payload["message"] == "Label tracking synchronized."
    assert payload["order"] == {"id": "E108", "status": "phone_on_the_way"}
    assert payload["statusUpdate"]["nextStatus"] == "phone_on_the_way"

    with pytest.raises(OrderNotFound):
        await ctx.reconciler.sync_label_tracking("missing", now=now)


# ---------------- kit refresh ----------------


@pytest.mark.asyncio
async def test_kit_delivered_to_us_scenario(ctx, carrier, seed, now, mailer):
    await seed(
        id="K200",
        status="kit_in_transit",
        shippingPreference=KIT,
        inboundTrackingNumber="9400K200IN",
    )
    carrier.tracking_replies["9400K200IN"] = tracking("DELIVERED", "Delivered")

    result = await ctx.reconciler.refresh_kit_tracking("K200", now=now)
    payload = result.to_payload()

    assert payload["direction"] == "inbound"
    assert payload["delivered"] is True
    assert payload["message"] == "Inbound kit marked as delivered to us."
    assert payload["order"] == {"id": "K200", "status": "delivered_to_us"}

    stored = await ctx.store.get("K200")
    assert stored["kitDeliveredToUsAt"] == iso(now)
    assert "receivedAt" not in stored
    assert stored["kitTrackingStatus"]["trackingNumber"] == "9400K200IN"
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_outbound_kit_delivery_promotes_and_follows_inbound(ctx, carrier, seed, now):
    await seed(
        id="K201",
        status="kit_sent",
        shippingPreference=KIT,
        outboundTrackingNumber="9400K201OUT",
        inboundTrackingNumber="9400K201IN",
    )
    carrier.tracking_replies["9400K201OUT"] = tracking("DE", "Delivered")
    carrier.tracking_replies["9400K201IN"] = tracking("NY", "Label created, not yet in system")

    result = await ctx.reconciler.refresh_kit_tracking("K201", now=now)

    assert result.direction == "outbound"
    assert result.message == "Kit marked as delivered."
    assert [call[0] for call in carrier.tracking_calls] == ["9400K201OUT", "9400K201IN"]
    stored = await ctx.store.get("K201")
    assert stored["status"] == "kit_delivered"
    assert stored["kitDeliveredAt"] == iso(now)


@pytest.mark.asyncio
async def test_kit_refresh_cooldown_and_missing_numbers(ctx, carrier, seed, now):
    await seed(id="K202", status="kit_sent", shippingPreference=KIT)
    none = await ctx.reconciler.refresh_kit_tracking("K202", now=now)
    assert none.to_payload() == {"skipped": True, "reason": "No tracking numbers available for this order."}

    await seed(
        id="K203",
        status="kit_sent",
        shippingPreference=KIT,
        outboundTrackingNumber="9400K203OUT",
        kitTrackingLastRefreshedAt=iso(now - timedelta(seconds=30)),
    )
    cooled = await ctx.reconciler.refresh_kit_tracking("K203", now=now)
    assert cooled.skipped
    assert cooled.reason == "Kit tracking was refreshed recently. Try again in about 10 minutes."
    assert carrier.tracking_calls == []


@pytest.mark.asyncio
async def test_outbound_sync_requires_a_number(ctx, carrier, seed, now):
    await seed(id="K204", status="kit_sent", shippingPreference=KIT)
    with pytest.raises(InvalidRequest):
        await ctx.reconciler.sync_outbound_tracking("K204", now=now)

    await seed(id="K205", status="kit_sent", shippingPreference=KIT, outboundTrackingNumber="9400K205")
    carrier.tracking_replies["9400K205"] = tracking("IT", "In Transit")
    payload = await ctx.reconciler.sync_outbound_tracking("K205", now=now)
    assert payload["statusUpdated"] is True
    assert payload["order"]["status"] == "kit_on_the_way_to_customer"
