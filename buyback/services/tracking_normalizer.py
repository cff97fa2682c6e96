# buyback/services/tracking_normalizer.py
"""
Carrier tracking vocabulary → internal movement semantics.

Two steps:
  1) normalize_inbound_status(code, description) → TrackingStatus
     (carrier code aliases first, then code substrings, then description
     keywords)
  2) movement_of(TrackingStatus) → Movement
     (no-movement / in-transit / delivered / delivered-to-agent)

The reconciler only ever looks at the Movement, so a second carrier only
needs another alias table here.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from buyback.domain.ports import TrackingInfo
from buyback.domain.statuses import KIT_TRANSIT_STATUS, OrderStatus


class TrackingStatus(str, Enum):
    DELIVERED = "DELIVERED"
    DELIVERED_TO_AGENT = "DELIVERED_TO_AGENT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    IN_TRANSIT = "IN_TRANSIT"
    ACCEPTED = "ACCEPTED"
    SHIPMENT_ACCEPTED = "SHIPMENT_ACCEPTED"
    DELIVERY_ATTEMPT = "DELIVERY_ATTEMPT"
    NOT_YET_IN_SYSTEM = "NOT_YET_IN_SYSTEM"
    LABEL_CREATED = "LABEL_CREATED"
    UNKNOWN = "UNKNOWN"


class Movement(str, Enum):
    NO_MOVEMENT = "no-movement"
    IN_TRANSIT = "in-transit"
    DELIVERED = "delivered"
    DELIVERED_TO_AGENT = "delivered-to-agent"

    @property
    def delivered(self) -> bool:
        return self in (Movement.DELIVERED, Movement.DELIVERED_TO_AGENT)


T = TrackingStatus

CARRIER_CODE_ALIASES: Mapping[str, TrackingStatus] = {
    "DELIVERED": T.DELIVERED,
    "DELIVERED_TO_AGENT": T.DELIVERED_TO_AGENT,
    "DELIVERED TO AGENT": T.DELIVERED_TO_AGENT,
    "DE": T.DELIVERED,
    "DL": T.DELIVERED,
    "SP": T.DELIVERED_TO_AGENT,
    "IT": T.IN_TRANSIT,
    "IN_TRANSIT": T.IN_TRANSIT,
    "NT": T.IN_TRANSIT,
    "OP": T.IN_TRANSIT,
    "PC": T.IN_TRANSIT,
    "SC": T.IN_TRANSIT,
    "AR": T.IN_TRANSIT,
    "AP": T.IN_TRANSIT,
    "IP": T.IN_TRANSIT,
    "PU": T.IN_TRANSIT,
    "OF": T.OUT_FOR_DELIVERY,
    "OD": T.OUT_FOR_DELIVERY,
    "OUT_FOR_DELIVERY": T.OUT_FOR_DELIVERY,
    "AC": T.ACCEPTED,
    "ACCEPTED": T.ACCEPTED,
    "OC": T.SHIPMENT_ACCEPTED,
    "SHIPMENT_ACCEPTED": T.SHIPMENT_ACCEPTED,
    "AT": T.DELIVERY_ATTEMPT,
    "NY": T.NOT_YET_IN_SYSTEM,
    "NOT_YET_IN_SYSTEM": T.NOT_YET_IN_SYSTEM,
    "LA": T.LABEL_CREATED,
    "LB": T.LABEL_CREATED,
    "LABEL_CREATED": T.LABEL_CREATED,
    "UN": T.UNKNOWN,
    "UNKNOWN": T.UNKNOWN,
}

MOVEMENT_BY_STATUS: Mapping[TrackingStatus, Movement] = {
    T.DELIVERED: Movement.DELIVERED,
    T.DELIVERED_TO_AGENT: Movement.DELIVERED_TO_AGENT,
    T.OUT_FOR_DELIVERY: Movement.IN_TRANSIT,
    T.IN_TRANSIT: Movement.IN_TRANSIT,
    T.ACCEPTED: Movement.IN_TRANSIT,
    T.SHIPMENT_ACCEPTED: Movement.IN_TRANSIT,
    T.DELIVERY_ATTEMPT: Movement.NO_MOVEMENT,
    T.NOT_YET_IN_SYSTEM: Movement.NO_MOVEMENT,
    T.LABEL_CREATED: Movement.NO_MOVEMENT,
    T.UNKNOWN: Movement.NO_MOVEMENT,
}

# two-letter carrier codes that mean "the package is moving"
TRANSIT_STATUS_CODES = frozenset(
    {"IT", "OF", "AC", "AT", "NY", "SP", "PU", "OC", "OD", "OP", "PC", "SC", "AR", "AP", "IP"}
)

TRANSIT_KEYWORDS = (
    "in transit",
    "out for delivery",
    "on its way",
    "acceptance",
    "shipment received",
    "arrived at",
    "departed",
    "processed at",
    "moving through",
    "package acceptance",
)

_ACCEPTED_WORD = re.compile(r"\baccept(ed|ance)\b")


def _upper(value: Optional[str]) -> str:
    return value.strip().upper() if isinstance(value, str) else ""


def _lower(value: Optional[str]) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def normalize_inbound_status(
    status_code: Optional[str], status_description: Optional[str] = None
) -> Optional[TrackingStatus]:
    code = _upper(status_code)
    if code in CARRIER_CODE_ALIASES:
        return CARRIER_CODE_ALIASES[code]

    if "DELIVERED" in code:
        return T.DELIVERED_TO_AGENT if "AGENT" in code else T.DELIVERED
    if "OUT_FOR_DELIVERY" in code:
        return T.OUT_FOR_DELIVERY
    if "ACCEPT" in code:
        return T.SHIPMENT_ACCEPTED if "SHIPMENT" in code else T.ACCEPTED
    if "TRANSIT" in code:
        return T.IN_TRANSIT
    if "LABEL" in code:
        return T.LABEL_CREATED
    if "ATTEMPT" in code:
        return T.DELIVERY_ATTEMPT
    if "UNKNOWN" in code:
        return T.UNKNOWN

    desc = _lower(status_description)
    if "out for delivery" in desc:
        return T.OUT_FOR_DELIVERY
    if "deliver" in desc and "agent" in desc:
        return T.DELIVERED_TO_AGENT
    if "deliver" in desc:
        return T.DELIVERED
    if "in transit" in desc or "moving through" in desc:
        return T.IN_TRANSIT
    if "accept" in desc:
        return T.ACCEPTED
    if "label" in desc:
        return T.LABEL_CREATED
    if "not yet" in desc:
        return T.NOT_YET_IN_SYSTEM
    if "attempt" in desc:
        return T.DELIVERY_ATTEMPT
    if "unknown" in desc:
        return T.UNKNOWN
    return None


def extract_tracking_fields(data: Mapping[str, Any]) -> TrackingInfo:
    """Carrier tracking payload → TrackingInfo (snake_case or camelCase keys)."""
    events: List[Dict[str, Any]] = []
    for key in ("events", "activities"):
        if isinstance(data.get(key), list):
            events = [e for e in data[key] if isinstance(e, dict)]
            break

    last_event = data.get("last_event") if isinstance(data.get("last_event"), Mapping) else {}
    return TrackingInfo(
        status_code=data.get("status_code") or data.get("statusCode"),
        status_description=data.get("status_description") or data.get("statusDescription"),
        carrier_status_code=data.get("carrier_status_code") or data.get("carrierStatusCode"),
        carrier_status_description=data.get("carrier_status_description")
        or data.get("carrierStatusDescription"),
        estimated_delivery=data.get("estimated_delivery_date") or data.get("estimatedDeliveryDate"),
        updated_at=data.get("updated_at") or data.get("updatedAt") or last_event.get("occurred_at"),
        events=events,
        raw=dict(data),
    )


def movement_of(status: Optional[TrackingStatus]) -> Movement:
    if status is None:
        return Movement.NO_MOVEMENT
    return MOVEMENT_BY_STATUS.get(status, Movement.NO_MOVEMENT)


def is_transit_status(
    status_code: Optional[str],
    status_description: Optional[str],
    estimated_delivery: Optional[str],
) -> bool:
    code = _upper(status_code)
    has_eta = bool(estimated_delivery)

    # accepted but without an ETA is not yet really moving
    if code == "AC" and not has_eta:
        return False
    if code in TRANSIT_STATUS_CODES:
        return True

    desc = _lower(status_description)
    if not desc:
        return False
    if not has_eta and _ACCEPTED_WORD.search(desc):
        return False
    if "delivered" in desc or "delivery complete" in desc:
        return False
    return any(keyword in desc for keyword in TRANSIT_KEYWORDS)


def is_accepted_without_eta(
    status_code: Optional[str],
    status_description: Optional[str],
    estimated_delivery: Optional[str],
) -> bool:
    if estimated_delivery:
        return False
    code = _upper(status_code)
    if code in ("AC", "SHIPMENT_ACCEPTED"):
        return True
    desc = _lower(status_description)
    return bool(desc and _ACCEPTED_WORD.search(desc))


def map_outbound_status(status_code: Optional[str]) -> Optional[OrderStatus]:
    """Outbound (kit to customer) carrier code → kit-track status."""
    normalized = normalize_inbound_status(status_code)
    if normalized is None:
        return None
    if movement_of(normalized).delivered:
        return OrderStatus.KIT_DELIVERED
    if normalized in _OUTBOUND_TRANSIT:
        return KIT_TRANSIT_STATUS
    return None


# a kit label that exists at all means the kit is on its way
_OUTBOUND_TRANSIT = frozenset(
    {
        T.OUT_FOR_DELIVERY,
        T.IN_TRANSIT,
        T.ACCEPTED,
        T.SHIPMENT_ACCEPTED,
        T.LABEL_CREATED,
        T.UNKNOWN,
    }
)


@dataclass(frozen=True)
class TrackingSnapshot:
    """What the reconciler needs out of one carrier read."""

    status: Optional[TrackingStatus]
    movement: Movement
    in_transit: bool
    accepted_without_eta: bool

    @property
    def delivered(self) -> bool:
        return self.movement.delivered

    @property
    def has_movement(self) -> bool:
        if self.movement is Movement.IN_TRANSIT:
            return True
        # unrecognized code: fall back to description keywords ("departed", "arrived at")
        return self.status is None and (self.in_transit or self.accepted_without_eta)


def snapshot_of(info: TrackingInfo) -> TrackingSnapshot:
    description = info.status_description or info.carrier_status_description
    status = normalize_inbound_status(info.status_code, description)
    return TrackingSnapshot(
        status=status,
        movement=movement_of(status),
        in_transit=is_transit_status(info.status_code, description, info.estimated_delivery),
        accepted_without_eta=is_accepted_without_eta(
            info.status_code, description, info.estimated_delivery
        ),
    )
