# buyback/domain/resolvers.py
"""
Ordered field resolvers.

Several values can come from more than one field of an order document
(carrier code, tracking number, "when did this start" timestamps). Each
one is resolved by trying an explicit tuple of accessors in order and
taking the first present value, so the precedence is a testable list.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional, Tuple

from buyback.utils.time import to_datetime

Accessor = Callable[[Mapping[str, Any]], Any]

INBOUND = "inbound"
OUTBOUND = "outbound"


def field(*path: str) -> Accessor:
    """Accessor for a (possibly nested) key path; missing links yield None."""

    def _get(doc: Mapping[str, Any]) -> Any:
        cur: Any = doc
        for key in path:
            if not isinstance(cur, Mapping):
                return None
            cur = cur.get(key)
        return cur

    _get.__name__ = "field_" + "_".join(path)
    return _get


def clean_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def first_present(
    doc: Mapping[str, Any],
    accessors: Iterable[Accessor],
    *,
    coerce: Callable[[Any], Any] = clean_str,
) -> Any:
    for accessor in accessors:
        value = coerce(accessor(doc))
        if value is not None:
            return value
    return None


def _label_carrier(role: str) -> Tuple[Accessor, ...]:
    return (
        field("shipEngineLabels", role, "shipment", "carrier_code"),
        field("shipEngineLabels", role, "shipment", "carrierCode"),
    )


# ---- carrier code ----
INBOUND_CARRIER_ACCESSORS: Tuple[Accessor, ...] = (
    field("inboundCarrierCode"),
    field("labelTrackingCarrierCode"),
    *_label_carrier("inbound"),
    *_label_carrier("customer"),
    *_label_carrier("return"),
    *_label_carrier("primary"),
)

OUTBOUND_CARRIER_ACCESSORS: Tuple[Accessor, ...] = (
    field("outboundCarrierCode"),
    *_label_carrier("outbound"),
    *_label_carrier("kit"),
    *_label_carrier("primary"),
)


def any_label_carrier(order: Mapping[str, Any]) -> Optional[str]:
    labels = order.get("shipEngineLabels")
    if not isinstance(labels, Mapping):
        return None
    for entry in labels.values():
        if not isinstance(entry, Mapping):
            continue
        found = first_present(
            entry,
            (
                field("carrier_code"),
                field("carrierCode"),
                field("shipment", "carrier_code"),
                field("shipment", "carrierCode"),
            ),
        )
        if found:
            return found
    return None


def resolve_carrier_code(order: Mapping[str, Any], direction: str, default: str) -> str:
    accessors = INBOUND_CARRIER_ACCESSORS if direction == INBOUND else OUTBOUND_CARRIER_ACCESSORS
    return first_present(order, accessors) or any_label_carrier(order) or default


# ---- tracking number ----
INBOUND_TRACKING_NUMBER_ACCESSORS: Tuple[Accessor, ...] = (
    field("inboundTrackingNumber"),
    field("trackingNumber"),
)
OUTBOUND_TRACKING_NUMBER_ACCESSORS: Tuple[Accessor, ...] = (field("outboundTrackingNumber"),)


def resolve_tracking_number(order: Mapping[str, Any], direction: str = INBOUND) -> Optional[str]:
    accessors = (
        INBOUND_TRACKING_NUMBER_ACCESSORS if direction == INBOUND else OUTBOUND_TRACKING_NUMBER_ACCESSORS
    )
    return first_present(order, accessors)


# ---- timestamps ----
LABEL_GENERATED_AT_ACCESSORS: Tuple[Accessor, ...] = (
    field("labelGeneratedAt"),
    field("kitLabelGeneratedAt"),
    field("createdAt"),
)

ORDER_AGE_ANCHOR_ACCESSORS: Tuple[Accessor, ...] = (
    field("labelGeneratedAt"),
    field("kitLabelGeneratedAt"),
    field("emailedAt"),
    field("createdAt"),
)

REMINDER_START_ACCESSORS: Tuple[Accessor, ...] = (
    field("labelGeneratedAt"),
    field("lastStatusUpdateAt"),
    field("createdAt"),
)

LAST_AUTO_VOID_ATTEMPT_ACCESSORS: Tuple[Accessor, ...] = (
    field("autoVoidAttemptedAt"),
    field("lastVoidAttemptAt"),
)

CUSTOMER_EMAIL_ACCESSORS: Tuple[Accessor, ...] = (
    field("lastCustomerEmailSentAt"),
    field("lastReminderSentAt"),
    field("reminderSentAt"),
    field("returnLabelEmailSentAt"),
    field("cancellationNotifiedAt"),
)


def first_timestamp(doc: Mapping[str, Any], accessors: Iterable[Accessor]) -> Optional[datetime]:
    return first_present(doc, accessors, coerce=to_datetime)


def latest_timestamp(doc: Mapping[str, Any], accessors: Iterable[Accessor]) -> Optional[datetime]:
    """Most recent of several timestamps (unlike first_present, every accessor counts)."""
    found = [to_datetime(accessor(doc)) for accessor in accessors]
    present = [dt for dt in found if dt is not None]
    return max(present) if present else None


def last_customer_email_at(order: Mapping[str, Any]) -> Optional[datetime]:
    return latest_timestamp(order, CUSTOMER_EMAIL_ACCESSORS)
