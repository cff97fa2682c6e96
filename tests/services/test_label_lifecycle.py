# tests/services/test_label_lifecycle.py
from datetime import timedelta

import pytest

from buyback.core.errors import CancellationNotAllowed, CredentialsMissing, InvalidRequest
from buyback.domain.ports import VoidResponse
from buyback.services.label_lifecycle import (
    AUTOMATIC,
    LabelSelection,
    auto_void_skip_reason,
    normalize_label_map,
    pending_selections,
)
from buyback.utils.time import iso
from tests.fakes import void_down

EMAIL_LABEL = "Email Label Requested"


def _label(label_id, **kw):
    return {"id": label_id, "status": "active", **kw}


def test_legacy_single_label_reads_as_primary():
    labels = normalize_label_map({"shipEngineLabelId": "se-1", "trackingNumber": "9400"})
    assert labels["primary"]["id"] == "se-1"
    assert labels["primary"]["status"] == "active"
    assert labels["primary"]["displayName"] == "Primary Shipping Label"


def test_pending_selections_skip_terminal_labels():
    order = {
        "shipEngineLabels": {
            "primary": _label("se-1"),
            "returnLabel": _label("se-2", status="voided"),
            "outbound": _label("se-3", status="void_error"),
            "broken": {"status": "active"},
        }
    }
    assert pending_selections(order) == [
        LabelSelection(key="primary", id="se-1"),
        LabelSelection(key="outbound", id="se-3"),
    ]


@pytest.mark.parametrize(
    "age,last_attempt,expected",
    [
        (timedelta(days=27), None, "too_recent"),
        (timedelta(days=29), None, None),
        (timedelta(days=29), timedelta(hours=2), "retry_backoff"),
        (timedelta(days=29), timedelta(hours=13), None),
    ],
)
def test_auto_void_age_gate(now, age, last_attempt, expected):
    entry = _label("se-1", generatedAt=iso(now - age))
    if last_attempt is not None:
        entry["autoVoidAttemptedAt"] = iso(now - last_attempt)
    reason = auto_void_skip_reason(
        {}, entry, now=now, min_age=timedelta(days=28), retry_after=timedelta(hours=12)
    )
    assert reason == expected


def test_auto_void_attempt_cap(now):
    entry = _label("se-1", generatedAt=iso(now - timedelta(days=40)), voidAttemptCount=3)
    common = dict(now=now, min_age=timedelta(days=28), retry_after=timedelta(hours=12))
    assert auto_void_skip_reason({}, entry, max_attempts=3, **common) == "attempts_exhausted"
    assert auto_void_skip_reason({}, entry, max_attempts=0, **common) is None


@pytest.mark.asyncio
async def test_void_is_idempotent(ctx, carrier, seed, now):
    order = await seed(
        id="L300",
        status="label_generated",
        shippingPreference=EMAIL_LABEL,
        trackingNumber="9400L300",
        shipEngineLabels={"primary": _label("se-300")},
    )

    first = await ctx.labels.void_labels(order, [LabelSelection("primary", "se-300")], now=now)
    assert [r.approved for r in first.results] == [True]
    assert first.order["status"] == "cancelled"
    assert "trackingNumber" not in first.order
    assert first.order["shipEngineLabels"]["primary"]["status"] == "voided"
    assert first.order["hasActiveShipEngineLabel"] is False

    second = await ctx.labels.void_labels(first.order, [LabelSelection("primary", "se-300")], now=now)
    assert second.results[0].short_circuit
    assert second.results[0].approved
    assert second.changed is False
    assert carrier.void_calls == ["se-300"]


@pytest.mark.asyncio
async def test_denied_and_errored_voids(ctx, carrier, seed, now):
    order = await seed(
        id="L301",
        status="label_generated",
        shipEngineLabels={"primary": _label("se-a"), "returnLabel": _label("se-b")},
    )
    carrier.void_replies["se-a"] = VoidResponse(approved=False, message="Label already used.")
    carrier.void_replies["se-b"] = void_down()

    outcome = await ctx.labels.void_labels(
        order, pending_selections(order), reason=AUTOMATIC, now=now
    )

    labels = outcome.order["shipEngineLabels"]
    assert labels["primary"]["status"] == "void_denied"
    assert labels["returnLabel"]["status"] == "void_error"
    assert labels["returnLabel"]["autoVoidAttemptedAt"] == iso(now)
    assert labels["returnLabel"]["voidAttemptCount"] == 1
    assert outcome.order["status"] == "label_generated"
    assert outcome.order["hasActiveShipEngineLabel"] is True
    assert [r.error for r in outcome.results] == [False, True]


@pytest.mark.asyncio
async def test_void_input_validation(ctx, carrier, seed, now):
    order = await seed(id="L302", status="label_generated", shipEngineLabels={"primary": _label("se-302")})
    with pytest.raises(InvalidRequest):
        await ctx.labels.void_labels(order, [], now=now)
    carrier.configured = False
    with pytest.raises(CredentialsMissing):
        await ctx.labels.void_labels(order, [LabelSelection("primary")], now=now)


@pytest.mark.asyncio
async def test_cancel_email_label_order(ctx, carrier, seed, now, mailer):
    await seed(
        id="L303",
        status="label_generated",
        shippingPreference=EMAIL_LABEL,
        trackingNumber="9400L303",
        shipEngineLabels={"primary": _label("se-303")},
    )

    outcome = await ctx.labels.cancel_order("L303", reason="customer_request", initiated_by="admin@x", now=now)
    payload = outcome.to_payload()

    assert payload["message"] == "Order cancelled."
    assert payload["order"] == {"id": "L303", "status": "cancelled"}
    assert payload["voidResults"][0]["approved"] is True
    stored = await ctx.store.get("L303")
    assert stored["cancelReason"] == "customer_request"
    assert stored["cancelRequestedBy"] == "admin@x"
    assert stored["cancellationNotifiedAt"] == iso(now)
    assert [m.subject for m in mailer.sent] == ["Order #L303 cancelled"]

    again = await ctx.labels.cancel_order("L303", now=now)
    assert again.already_cancelled
    assert again.to_payload()["message"] == "Order already cancelled."
    assert carrier.void_calls == ["se-303"]


@pytest.mark.asyncio
async def test_cancel_rejected_for_kit_order_in_transit(ctx, seed, now):
    await seed(id="L304", status="kit_on_the_way_to_customer", shippingPreference="Shipping Kit Requested")
    with pytest.raises(CancellationNotAllowed):
        await ctx.labels.cancel_order("L304", now=now)


@pytest.mark.asyncio
async def test_cancel_kit_delivered_without_customer_mail(ctx, seed, now, mailer):
    await seed(id="L305", status="kit_delivered", shippingPreference="Shipping Kit Requested")
    outcome = await ctx.labels.cancel_order("L305", notify_customer=False, now=now)
    assert outcome.order["status"] == "cancelled"
    assert outcome.order["cancelReason"] == "cancelled_by_admin"
    assert outcome.void_results == []
    assert mailer.sent == []
