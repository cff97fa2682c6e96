# buyback/domain/statuses.py
"""
Order status vocabulary and transition rules.

- OrderStatus: closed set of order-level lifecycle states.
- KIT_TRACK: outbound shipping-kit leg, promoted strictly forward.
- LIFECYCLE_RANK: coarse ordering across both legs, used to reject a stale
  or duplicate tracking read that would move an order backwards.
- TRANSITIONS: explicit edge table {source, from, to}. Building a
  Transition with a state outside OrderStatus raises at import time.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Tuple

from buyback.core.errors import IllegalTransition


class OrderStatus(str, Enum):
    ORDER_PENDING = "order_pending"
    NEEDS_PRINTING = "needs_printing"
    KIT_SENT = "kit_sent"
    KIT_ON_THE_WAY_TO_CUSTOMER = "kit_on_the_way_to_customer"
    KIT_DELIVERED = "kit_delivered"
    KIT_ON_THE_WAY_TO_US = "kit_on_the_way_to_us"
    LABEL_GENERATED = "label_generated"
    PHONE_ON_THE_WAY = "phone_on_the_way"
    DELIVERED_TO_US = "delivered_to_us"
    RECEIVED = "received"
    EMAILED = "emailed"
    RE_OFFERED_PENDING = "re-offered-pending"
    RE_OFFERED_ACCEPTED = "re-offered-accepted"
    RE_OFFERED_AUTO_ACCEPTED = "re-offered-auto-accepted"
    RE_OFFERED_DECLINED = "re-offered-declined"
    RETURN_LABEL_GENERATED = "return-label-generated"
    RETURNED = "returned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransitionSource(str, Enum):
    KIT_TRACKING = "kit_tracking"
    INBOUND_TRACKING = "inbound_tracking"
    LABEL_VOID = "label_void"
    CANCELLATION = "cancellation"
    REOFFER = "reoffer"
    AUTO_FINALIZE = "auto_finalize"


S = OrderStatus

SHIPPING_KIT_PREFERENCE = "shipping kit requested"
EMAIL_LABEL_PREFERENCE = "email label requested"

# legacy spellings still present on older documents
STATUS_ALIASES: Mapping[str, OrderStatus] = {
    "kit_in_transit": S.KIT_ON_THE_WAY_TO_CUSTOMER,
    "phone_on_the_way_to_us": S.PHONE_ON_THE_WAY,
    "canceled": S.CANCELLED,
    "re_offered_pending": S.RE_OFFERED_PENDING,
    "re_offered_accepted": S.RE_OFFERED_ACCEPTED,
    "re_offered_auto_accepted": S.RE_OFFERED_AUTO_ACCEPTED,
    "re_offered_declined": S.RE_OFFERED_DECLINED,
    "return_label_generated": S.RETURN_LABEL_GENERATED,
}

KIT_TRANSIT_STATUS = S.KIT_ON_THE_WAY_TO_CUSTOMER
PHONE_TRANSIT_STATUS = S.PHONE_ON_THE_WAY

KIT_TRACK: Tuple[OrderStatus, ...] = (
    S.NEEDS_PRINTING,
    S.KIT_SENT,
    S.KIT_ON_THE_WAY_TO_CUSTOMER,
    S.KIT_DELIVERED,
)

INBOUND_TRACK: Tuple[OrderStatus, ...] = (
    S.PHONE_ON_THE_WAY,
    S.DELIVERED_TO_US,
    S.RECEIVED,
    S.COMPLETED,
)

LIFECYCLE_RANK: Mapping[OrderStatus, int] = {
    S.ORDER_PENDING: 0,
    S.NEEDS_PRINTING: 0,
    S.KIT_SENT: 1,
    S.KIT_ON_THE_WAY_TO_CUSTOMER: 2,
    S.KIT_DELIVERED: 3,
    S.LABEL_GENERATED: 3,
    S.KIT_ON_THE_WAY_TO_US: 4,
    S.PHONE_ON_THE_WAY: 4,
    S.DELIVERED_TO_US: 5,
    S.RECEIVED: 6,
    S.EMAILED: 6,
    S.RE_OFFERED_PENDING: 7,
    S.RE_OFFERED_ACCEPTED: 8,
    S.RE_OFFERED_AUTO_ACCEPTED: 8,
    S.RE_OFFERED_DECLINED: 8,
    S.RETURN_LABEL_GENERATED: 8,
    S.RETURNED: 9,
    S.COMPLETED: 9,
    S.CANCELLED: 9,
}

TERMINAL_ORDER_STATUSES = frozenset(
    {S.COMPLETED, S.CANCELLED, S.RE_OFFERED_DECLINED, S.RETURNED}
)

# orders still waiting for the customer's device to reach us
INBOUND_TRACKABLE_STATUSES = frozenset(
    {
        S.KIT_DELIVERED,
        S.KIT_ON_THE_WAY_TO_CUSTOMER,
        S.DELIVERED_TO_US,
        S.KIT_ON_THE_WAY_TO_US,
        S.LABEL_GENERATED,
        S.EMAILED,
        S.PHONE_ON_THE_WAY,
    }
)

# statuses for which a kit refresh follows the inbound (customer → us) leg
INBOUND_DIRECTION_STATUSES = frozenset(
    {
        S.KIT_DELIVERED,
        S.KIT_ON_THE_WAY_TO_CUSTOMER,
        S.KIT_ON_THE_WAY_TO_US,
        S.DELIVERED_TO_US,
        S.LABEL_GENERATED,
        S.EMAILED,
        S.RECEIVED,
        S.PHONE_ON_THE_WAY,
        S.COMPLETED,
        S.RE_OFFERED_PENDING,
        S.RE_OFFERED_ACCEPTED,
        S.RE_OFFERED_DECLINED,
        S.RE_OFFERED_AUTO_ACCEPTED,
    }
)

# once the device is moving towards us the reconciler never resets to a base status
INBOUND_LOCK_STATUSES = frozenset(
    {S.PHONE_ON_THE_WAY, S.DELIVERED_TO_US, S.RECEIVED, S.COMPLETED}
)


def normalize_status(value: Any) -> str:
    """Lower-cased status string with legacy aliases resolved."""
    if isinstance(value, OrderStatus):
        return value.value
    if not isinstance(value, str):
        return ""
    raw = value.strip().lower()
    alias = STATUS_ALIASES.get(raw)
    return alias.value if alias else raw


def coerce_status(value: Any) -> Optional[OrderStatus]:
    raw = normalize_status(value)
    if not raw:
        return None
    try:
        return OrderStatus(raw)
    except ValueError:
        return None


def is_kit_order(order: Mapping[str, Any]) -> bool:
    return str(order.get("shippingPreference") or "").strip().lower() == SHIPPING_KIT_PREFERENCE


def is_email_label_order(order: Mapping[str, Any]) -> bool:
    return str(order.get("shippingPreference") or "").strip().lower() == EMAIL_LABEL_PREFERENCE


def should_promote_kit_status(current: Any, candidate: Any) -> bool:
    """
    Forward-only promotion along the kit track.

    - candidate not on the track → reject
    - current unknown / off-track → accept (initialize)
    - otherwise accept only when candidate sits strictly later
    """
    nxt = coerce_status(candidate)
    if nxt not in KIT_TRACK:
        return False
    cur = coerce_status(current)
    if cur not in KIT_TRACK:
        return True
    return KIT_TRACK.index(nxt) > KIT_TRACK.index(cur)


def is_forward_progress(current: Any, candidate: Any) -> bool:
    nxt = coerce_status(candidate)
    if nxt is None:
        return False
    cur = coerce_status(current)
    if cur is None:
        return True
    return LIFECYCLE_RANK[nxt] > LIFECYCLE_RANK[cur]


# ==========================================================
# Transition table
# ==========================================================


@dataclass(frozen=True)
class Transition:
    source: TransitionSource
    from_statuses: frozenset
    to: OrderStatus

    def __post_init__(self) -> None:
        # unknown states fail here, when the table is built
        object.__setattr__(self, "source", TransitionSource(self.source))
        object.__setattr__(self, "to", OrderStatus(self.to))
        object.__setattr__(
            self, "from_statuses", frozenset(OrderStatus(s) for s in self.from_statuses)
        )


def _forward_edges(
    source: TransitionSource, track: Iterable[OrderStatus]
) -> Tuple[Transition, ...]:
    ordered = list(track)
    return tuple(
        Transition(source, frozenset(ordered[:idx]), target)
        for idx, target in enumerate(ordered)
        if idx > 0
    )


_PRE_INBOUND = frozenset(
    {
        S.ORDER_PENDING,
        S.NEEDS_PRINTING,
        S.KIT_SENT,
        S.KIT_ON_THE_WAY_TO_CUSTOMER,
        S.KIT_DELIVERED,
        S.KIT_ON_THE_WAY_TO_US,
        S.LABEL_GENERATED,
    }
)
_OPEN = frozenset(s for s in OrderStatus if s not in TERMINAL_ORDER_STATUSES)
_REOFFER_OUTCOMES = (
    S.RE_OFFERED_PENDING,
    S.RE_OFFERED_ACCEPTED,
    S.RE_OFFERED_AUTO_ACCEPTED,
    S.RE_OFFERED_DECLINED,
    S.COMPLETED,
)

TRANSITIONS: Tuple[Transition, ...] = (
    *_forward_edges(TransitionSource.KIT_TRACKING, KIT_TRACK),
    Transition(TransitionSource.INBOUND_TRACKING, {S.ORDER_PENDING, S.NEEDS_PRINTING}, S.KIT_SENT),
    Transition(
        TransitionSource.INBOUND_TRACKING,
        {S.ORDER_PENDING, S.NEEDS_PRINTING, S.KIT_SENT, S.KIT_ON_THE_WAY_TO_CUSTOMER},
        S.KIT_DELIVERED,
    ),
    Transition(TransitionSource.INBOUND_TRACKING, {S.ORDER_PENDING}, S.LABEL_GENERATED),
    Transition(TransitionSource.INBOUND_TRACKING, _PRE_INBOUND, S.PHONE_ON_THE_WAY),
    Transition(
        TransitionSource.INBOUND_TRACKING, _PRE_INBOUND | {S.PHONE_ON_THE_WAY}, S.DELIVERED_TO_US
    ),
    Transition(TransitionSource.INBOUND_TRACKING, {S.DELIVERED_TO_US}, S.RECEIVED),
    Transition(TransitionSource.LABEL_VOID, _OPEN, S.CANCELLED),
    Transition(TransitionSource.CANCELLATION, _OPEN, S.CANCELLED),
    *(Transition(TransitionSource.REOFFER, _OPEN, target) for target in _REOFFER_OUTCOMES),
    Transition(TransitionSource.AUTO_FINALIZE, {S.EMAILED}, S.COMPLETED),
)


def can_transition(source: TransitionSource, current: Any, target: Any) -> bool:
    """
    True when the table holds an edge current → target for `source`.

    An unrecognized current status accepts any target the source can reach.
    """
    nxt = coerce_status(target)
    if nxt is None:
        return False
    cur = coerce_status(current)
    for t in TRANSITIONS:
        if t.source != source or t.to != nxt:
            continue
        if cur is None or cur in t.from_statuses:
            return True
    return False


# ==========================================================
# "Past received" detection (refresh endpoints stop there)
# ==========================================================

POST_RECEIVED_STATUS_HINTS = frozenset(
    {
        "received",
        "device_received",
        "received_device",
        "imei_checked",
        "balance_email_sent",
        "balanced_email_sent",
        "password_email_sent",
        "fmi_email_sent",
        "lost_stolen",
        "completed",
        "complete",
        "emailed",
        "cancelled",
        "canceled",
        "returned",
        "paid",
    }
)

BALANCE_EMAIL_STATUS_ALIASES = frozenset(
    {"emailed", "balance_email_sent", "balanced_email_sent"}
)


def _status_candidate(value: Any) -> str:
    if isinstance(value, (str, OrderStatus)):
        return normalize_status(value)
    if isinstance(value, Mapping):
        for key in ("status", "currentStatus", "statusValue", "status_value"):
            candidate = value.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return normalize_status(candidate)
    return ""


def is_status_past_received(value: Any) -> bool:
    raw = _status_candidate(value)
    if not raw:
        return False
    underscored = raw.replace("-", "_").replace(" ", "_")
    if raw in POST_RECEIVED_STATUS_HINTS or underscored in POST_RECEIVED_STATUS_HINTS:
        return True
    if "reoffer" in underscored or "re_offer" in underscored:
        return True
    if "return_label" in underscored or "returnlabel" in underscored:
        return True
    if "received" in underscored and "not_received" not in underscored and "kit" not in underscored:
        return True
    return False


def has_balance_email_flag(order: Mapping[str, Any]) -> bool:
    reason = str(order.get("lastConditionEmailReason") or order.get("conditionEmailReason") or "")
    if reason.lower() == "outstanding_balance":
        return True
    return bool(order.get("balanceEmailSentAt"))


def is_balance_email_status(order: Mapping[str, Any]) -> bool:
    raw = _status_candidate(order).replace("-", "_").replace(" ", "_")
    if raw not in BALANCE_EMAIL_STATUS_ALIASES:
        return False
    if raw == "emailed":
        return has_balance_email_flag(order)
    return True


def assert_transition(source: TransitionSource, current: Any, target: Any) -> OrderStatus:
    nxt = coerce_status(target)
    if nxt is None or not can_transition(source, current, nxt):
        raise IllegalTransition(
            f"Transition {normalize_status(current) or '?'} → {normalize_status(target) or target} "
            f"is not allowed for {TransitionSource(source).value}.",
            context={"from": normalize_status(current), "to": normalize_status(target)},
        )
    return nxt
