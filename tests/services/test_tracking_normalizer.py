# tests/services/test_tracking_normalizer.py
import pytest

from buyback.domain.ports import TrackingInfo
from buyback.domain.statuses import OrderStatus
from buyback.services.tracking_normalizer import (
    Movement,
    TrackingStatus,
    extract_tracking_fields,
    is_transit_status,
    map_outbound_status,
    movement_of,
    normalize_inbound_status,
    snapshot_of,
)

T = TrackingStatus


@pytest.mark.parametrize(
    "code,description,expected",
    [
        ("DE", None, T.DELIVERED),
        ("dl", None, T.DELIVERED),
        ("SP", None, T.DELIVERED_TO_AGENT),
        ("IT", None, T.IN_TRANSIT),
        ("OF", None, T.OUT_FOR_DELIVERY),
        ("AC", None, T.ACCEPTED),
        ("NY", None, T.NOT_YET_IN_SYSTEM),
        ("AT", None, T.DELIVERY_ATTEMPT),
        ("LA", None, T.LABEL_CREATED),
        ("UN", None, T.UNKNOWN),
        ("PACKAGE_DELIVERED_TO_AGENT", None, T.DELIVERED_TO_AGENT),
        ("SHIPMENT_ACCEPTANCE", None, T.SHIPMENT_ACCEPTED),
        (None, "Out for Delivery, expected today", T.OUT_FOR_DELIVERY),
        (None, "Delivered, In/At Mailbox", T.DELIVERED),
        ("", "Moving through network", T.IN_TRANSIT),
        ("ZZ", "Pre-shipment info sent", None),
    ],
)
def test_normalize_inbound_status(code, description, expected):
    assert normalize_inbound_status(code, description) is expected


def test_movement_mapping():
    assert movement_of(T.DELIVERED) is Movement.DELIVERED
    assert movement_of(T.DELIVERED_TO_AGENT).delivered
    assert movement_of(T.OUT_FOR_DELIVERY) is Movement.IN_TRANSIT
    assert movement_of(T.NOT_YET_IN_SYSTEM) is Movement.NO_MOVEMENT
    assert movement_of(T.DELIVERY_ATTEMPT) is Movement.NO_MOVEMENT
    assert movement_of(None) is Movement.NO_MOVEMENT


def test_accepted_without_eta_is_not_transit():
    assert is_transit_status("AC", None, None) is False
    assert is_transit_status("AC", None, "2026-03-04") is True
    assert is_transit_status(None, "Departed USPS Regional Facility", None) is True
    assert is_transit_status(None, "Delivered, Front Door", None) is False


def test_unrecognized_code_with_transit_description_counts_as_movement():
    snap = snapshot_of(TrackingInfo(status_code="ZZ", status_description="Arrived at USPS Facility"))
    assert snap.status is None
    assert snap.has_movement and not snap.delivered


def test_outbound_mapping():
    assert map_outbound_status("DE") is OrderStatus.KIT_DELIVERED
    assert map_outbound_status("IT") is OrderStatus.KIT_ON_THE_WAY_TO_CUSTOMER
    assert map_outbound_status("LABEL_CREATED") is OrderStatus.KIT_ON_THE_WAY_TO_CUSTOMER
    assert map_outbound_status("NY") is None
    assert map_outbound_status(None) is None


def test_extract_tracking_fields_reads_both_key_styles():
    snake = extract_tracking_fields(
        {
            "status_code": "IT",
            "status_description": "In Transit",
            "carrier_status_code": "NT",
            "estimated_delivery_date": "2026-03-04T00:00:00Z",
            "events": [{"occurred_at": "2026-03-01T10:00:00Z"}, "junk"],
        }
    )
    assert snake.status_code == "IT"
    assert snake.estimated_delivery == "2026-03-04T00:00:00Z"
    assert snake.events == [{"occurred_at": "2026-03-01T10:00:00Z"}]

    camel = extract_tracking_fields(
        {"statusCode": "DE", "activities": [], "last_event": {"occurred_at": "2026-03-02T09:00:00Z"}}
    )
    assert camel.status_code == "DE"
    assert camel.updated_at == "2026-03-02T09:00:00Z"
    assert camel.raw["statusCode"] == "DE"
