# buyback/domain/device_status.py
"""
Multi-device status aggregation.

An order can bundle several devices; each one carries its own re-offer
outcome under deviceStatusByKey["{orderId}::{index}"]. The order-level
status is derived from the full set and is only decided once every device
has reached a terminal outcome.

Precedence when outcomes are mixed:
  1) any decline / return  → re-offered-declined
  2) any acceptance        → re-offered-accepted
     (re-offered-auto-accepted when every acceptance was automatic)
  3) all completed / paid  → completed
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional

from buyback.domain.statuses import OrderStatus

DEVICE_KEY_SEPARATOR = "::"

DECLINED_DEVICE_STATUSES = frozenset(
    {"re_offered_declined", "declined", "return_label_generated", "returned", "return_requested"}
)
ACCEPTED_DEVICE_STATUSES = frozenset({"re_offered_accepted", "accepted", "requote_accepted"})
AUTO_ACCEPTED_DEVICE_STATUSES = frozenset({"re_offered_auto_accepted", "auto_accepted"})
COMPLETED_DEVICE_STATUSES = frozenset({"completed", "paid"})

TERMINAL_DEVICE_STATUSES = (
    DECLINED_DEVICE_STATUSES
    | ACCEPTED_DEVICE_STATUSES
    | AUTO_ACCEPTED_DEVICE_STATUSES
    | COMPLETED_DEVICE_STATUSES
)

_SEPARATORS = re.compile(r"[\s-]+")


def build_device_key(order_id: str, index: int) -> str:
    return f"{order_id}{DEVICE_KEY_SEPARATOR}{int(index)}"


def normalize_device_key(order_id: str, key: Any) -> str:
    """Bare indices ("0", 1) become full device keys; full keys pass through."""
    if isinstance(key, int):
        return build_device_key(order_id, key)
    raw = str(key).strip()
    if raw.isdigit():
        return build_device_key(order_id, int(raw))
    return raw


def normalize_device_status(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return _SEPARATORS.sub("_", value.strip().lower())


def normalize_device_map(order_id: str, mapping: Optional[Mapping[Any, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in (mapping or {}).items():
        out[normalize_device_key(order_id, key)] = value
    return out


def collect_device_keys(
    order: Mapping[str, Any], device_status_by_key: Optional[Mapping[Any, Any]] = None
) -> List[str]:
    """
    Every device key the order knows about, in a stable order:
    item indices first (or index 0 for a single-device order), then any
    extra key present on the status / re-offer maps.
    """
    order_id = str(order.get("id") or "")
    items = order.get("items")
    count = len(items) if isinstance(items, list) and items else 1
    keys = [build_device_key(order_id, i) for i in range(count)]
    seen = set(keys)

    sources = (
        device_status_by_key
        if device_status_by_key is not None
        else order.get("deviceStatusByKey"),
        order.get("reOfferByDevice"),
    )
    for source in sources:
        if not isinstance(source, Mapping):
            continue
        for key in source:
            full = normalize_device_key(order_id, key)
            if full not in seen:
                seen.add(full)
                keys.append(full)
    return keys


def is_single_device_order(order: Mapping[str, Any]) -> bool:
    items = order.get("items")
    return not (isinstance(items, list) and len(items) > 1)


def derive_order_status_from_devices(
    order: Mapping[str, Any],
    device_status_by_key: Optional[Mapping[Any, Any]] = None,
) -> Optional[OrderStatus]:
    """Definitive order status, or None while any device is unresolved."""
    order_id = str(order.get("id") or "")
    status_map = normalize_device_map(
        order_id,
        device_status_by_key
        if device_status_by_key is not None
        else order.get("deviceStatusByKey"),
    )
    keys = collect_device_keys(order, status_map)
    fallback = normalize_device_status(order.get("status"))

    statuses = []
    for key in keys:
        status = normalize_device_status(status_map.get(key)) or fallback
        if status not in TERMINAL_DEVICE_STATUSES:
            return None
        statuses.append(status)

    if any(s in DECLINED_DEVICE_STATUSES for s in statuses):
        return OrderStatus.RE_OFFERED_DECLINED
    if any(s in ACCEPTED_DEVICE_STATUSES for s in statuses):
        return OrderStatus.RE_OFFERED_ACCEPTED
    if any(s in AUTO_ACCEPTED_DEVICE_STATUSES for s in statuses):
        return OrderStatus.RE_OFFERED_AUTO_ACCEPTED
    return OrderStatus.COMPLETED
