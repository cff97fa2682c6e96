# tests/domain/test_resolvers.py
from buyback.domain.resolvers import (
    INBOUND,
    OUTBOUND,
    last_customer_email_at,
    resolve_carrier_code,
    resolve_tracking_number,
)
from buyback.utils.time import to_datetime


def test_carrier_code_precedence():
    order = {
        "labelTrackingCarrierCode": "ups",
        "shipEngineLabels": {"primary": {"shipment": {"carrier_code": "fedex"}}},
    }
    assert resolve_carrier_code(order, INBOUND, "stamps_com") == "ups"
    assert resolve_carrier_code({"inboundCarrierCode": "usps", **order}, INBOUND, "stamps_com") == "usps"
    assert resolve_carrier_code(order, OUTBOUND, "stamps_com") == "fedex"
    assert resolve_carrier_code({}, OUTBOUND, "stamps_com") == "stamps_com"


def test_label_map_carrier_is_a_last_resort():
    order = {"shipEngineLabels": {"returnKit": {"carrierCode": "dhl"}}}
    assert resolve_carrier_code(order, INBOUND, "stamps_com") == "dhl"


def test_tracking_number_lookup_ignores_blank_values():
    assert resolve_tracking_number({"inboundTrackingNumber": "  ", "trackingNumber": "9400"}) == "9400"
    assert resolve_tracking_number({"outboundTrackingNumber": "9300"}, OUTBOUND) == "9300"
    assert resolve_tracking_number({}) is None


def test_last_customer_email_takes_the_latest_stamp():
    order = {
        "lastCustomerEmailSentAt": "2026-02-01T00:00:00Z",
        "lastReminderSentAt": "2026-02-03T00:00:00Z",
        "cancellationNotifiedAt": {"seconds": 1769904000, "nanoseconds": 0},
    }
    assert last_customer_email_at(order) == to_datetime("2026-02-03T00:00:00Z")
