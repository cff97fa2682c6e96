# tests/api/test_orders_api.py
from datetime import timedelta

import pytest

from buyback.utils.time import iso
from tests.fakes import tracking_down

EMAIL_LABEL = "Email Label Requested"
KIT = "Shipping Kit Requested"


@pytest.mark.asyncio
async def test_unknown_order_returns_problem(client):
    r = await client.post("/orders/NOPE/cancel")
    assert r.status_code == 404
    problem = r.json()
    assert problem["error_code"] == "order_not_found"
    assert problem["http_status"] == 404
    assert problem["context"]["order_id"] == "NOPE"
    assert problem["context"]["path"] == "/orders/NOPE/cancel"
    assert problem["trace_id"].startswith("t_")


@pytest.mark.asyncio
async def test_cancel_email_label_order(client, seed, carrier, mailer):
    await seed(
        id="A100",
        status="label_generated",
        shippingPreference=EMAIL_LABEL,
        shipEngineLabels={"primary": {"id": "se-a100", "status": "active"}},
    )

    r = await client.post(
        "/orders/A100/cancel", json={"reason": "customer_request", "initiatedBy": "ops@example.com"}
    )

    assert r.status_code == 200
    data = r.json()
    assert data["message"] == "Order cancelled."
    assert data["order"] == {"id": "A100", "status": "cancelled"}
    assert data["voidResults"][0]["approved"] is True
    assert carrier.void_calls == ["se-a100"]
    assert [m.subject for m in mailer.sent] == ["Order #A100 cancelled"]


@pytest.mark.asyncio
async def test_cancel_not_allowed_for_kit_in_transit(client, seed):
    await seed(id="A101", status="kit_on_the_way_to_customer", shippingPreference=KIT)

    r = await client.post("/orders/A101/cancel", json={"notifyCustomer": False})

    assert r.status_code == 400
    assert r.json()["error_code"] == "cancellation_not_allowed"


@pytest.mark.asyncio
async def test_refresh_kit_tracking_skips_received_orders(client, seed):
    await seed(id="A102", status="received", shippingPreference=KIT, trackingNumber="9400A102")

    r = await client.post("/orders/A102/refresh-kit-tracking")

    assert r.status_code == 200
    assert r.json() == {
        "skipped": True,
        "reason": "Order already received/completed. Tracking refresh skipped.",
    }


@pytest.mark.asyncio
async def test_sync_label_tracking_maps_carrier_outage_to_502(client, seed, carrier):
    await seed(
        id="A103",
        status="label_generated",
        shippingPreference=EMAIL_LABEL,
        trackingNumber="9400A103",
    )
    carrier.tracking_replies["9400A103"] = tracking_down()

    r = await client.post("/orders/A103/sync-label-tracking", json={"force": True})

    assert r.status_code == 502
    assert r.json()["message"] == "Carrier tracking request timed out."


@pytest.mark.asyncio
async def test_reoffer_round_trip(client, seed, mailer):
    await seed(id="A104", status="received")

    r = await client.post("/orders/A104/re-offer", json={"newPrice": 75, "reasons": ["Cracked back"]})
    assert r.status_code == 200
    assert r.json()["status"] == "re-offered-pending"

    r = await client.post("/orders/A104/re-offer/decline")
    assert r.status_code == 200
    assert r.json()["status"] == "re-offered-declined"

    r = await client.post("/orders/A104/re-offer/accept")
    assert r.json()["alreadyResolved"] is True
    assert len(mailer.sent) == 2


@pytest.mark.asyncio
async def test_reoffer_rejects_bad_price(client, seed):
    await seed(id="A105", status="received")

    r = await client.post("/orders/A105/re-offer", json={"newPrice": 0, "reasons": ["x"]})

    assert r.status_code == 422
    problem = r.json()
    assert problem["error_code"] == "request_validation_error"
    assert problem["details"]


@pytest.mark.asyncio
async def test_bulk_void_endpoint(client, seed, now):
    await seed(
        id="A106",
        status="label_generated",
        labelGeneratedAt=iso(now - timedelta(days=400)),
        shipEngineLabels={"primary": {"id": "se-a106", "status": "active"}},
    )

    r = await client.post("/orders/admin/bulk-void-aged", json={"minDays": 30, "limit": 5})

    assert r.status_code == 200
    data = r.json()
    assert data["mode"] == "aged"
    assert data["maxOrders"] == 5
    assert data["cancelled"] == 1
    assert data["cancelledEntries"][0]["orderId"] == "A106"


@pytest.mark.asyncio
async def test_health_and_metrics(client):
    r = await client.get("/healthz")
    assert r.json() == {"status": "ok"}

    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "http_requests_total" in r.text
