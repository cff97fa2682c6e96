# buyback/services/reoffer_service.py
"""
Revised offers after inspection.

- create: device → re-offered-pending, autoAcceptDate = now + N days
- accept / decline: customer response for one device
- expire: pending devices past their autoAcceptDate → re-offered-auto-accepted

The order-level status is only rewritten when the device aggregator gives
a definitive answer; a single-device order simply follows its device.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from buyback.core.config import AppSettings
from buyback.core.errors import InvalidRequest, OrderNotFound
from buyback.domain.device_status import (
    build_device_key,
    collect_device_keys,
    derive_order_status_from_devices,
    normalize_device_key,
    normalize_device_map,
    normalize_device_status,
)
from buyback.domain.ports import Order, OrderStore
from buyback.domain.statuses import OrderStatus, TransitionSource, assert_transition, coerce_status
from buyback.services import notifications
from buyback.services.activity_log import ActivityLogWriter
from buyback.services.notifications import NotificationDispatcher
from buyback.services.order_store import SERVER_TIMESTAMP
from buyback.utils.time import iso, to_datetime, utcnow

logger = logging.getLogger("buyback.reoffer")

PENDING = "re_offered_pending"


@dataclass
class ExpiryResult:
    order: Order
    expired_keys: List[str] = field(default_factory=list)
    status: Optional[OrderStatus] = None


def _money(value: Any) -> Optional[float]:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    return amount if amount == amount else None


def resolve_device_key(order_id: str, device_key: Optional[str]) -> str:
    if isinstance(device_key, str) and device_key.strip():
        return normalize_device_key(order_id, device_key)
    return build_device_key(order_id, 0)


def device_status_of(order: Mapping[str, Any], status_map: Mapping[str, Any], key: str) -> str:
    return normalize_device_status(status_map.get(key) or order.get("status"))


def expired_device_keys(order: Mapping[str, Any], now: datetime) -> List[str]:
    """
    Pending devices whose offer deadline has passed.

    Per-device offers are checked first; the order-level reOffer only counts
    for device 0 when no per-device offer expired.
    """
    order_id = str(order.get("id") or "")
    status_map = normalize_device_map(order_id, order.get("deviceStatusByKey"))
    offers = normalize_device_map(order_id, order.get("reOfferByDevice"))

    expired: List[str] = []
    for key, offer in offers.items():
        deadline = to_datetime(offer.get("autoAcceptDate")) if isinstance(offer, Mapping) else None
        if deadline is None or deadline > now:
            continue
        if device_status_of(order, status_map, key) == PENDING:
            expired.append(key)

    if not expired:
        reoffer = order.get("reOffer") if isinstance(order.get("reOffer"), Mapping) else {}
        deadline = to_datetime(reoffer.get("autoAcceptDate"))
        key = build_device_key(order_id, 0)
        if deadline is not None and deadline <= now and device_status_of(order, status_map, key) == PENDING:
            expired.append(key)
    return expired


def _status_fields(
    order: Mapping[str, Any], status_map: Mapping[str, Any], device_status: OrderStatus
) -> Dict[str, Any]:
    derived = derive_order_status_from_devices(order, status_map)
    if derived is None and len(collect_device_keys(order, status_map)) == 1:
        derived = device_status
    if derived is None or coerce_status(order.get("status")) is derived:
        return {}
    return {"status": derived}


class ReofferService:
    def __init__(self, store: OrderStore, dispatcher: NotificationDispatcher, settings: AppSettings) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.settings = settings

    async def _load(self, order_id: str) -> Order:
        order = await self.store.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def create_reoffer(
        self,
        order_id: str,
        *,
        new_price: Any,
        reasons: Sequence[str],
        comments: Optional[str] = None,
        device_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        price = _money(new_price)
        if not price or price <= 0 or not reasons:
            raise InvalidRequest("New price and at least one reason are required")

        now = now or utcnow()
        order = await self._load(order_id)
        assert_transition(TransitionSource.REOFFER, order.get("status"), OrderStatus.RE_OFFERED_PENDING)

        key = resolve_device_key(order_id, device_key)
        auto_accept_at = now + timedelta(days=self.settings.REOFFER_AUTO_ACCEPT_DAYS)
        offer = {
            "newPrice": price,
            "reasons": list(reasons),
            "comments": comments,
            "createdAt": iso(now),
            "autoAcceptDate": iso(auto_accept_at),
        }
        status_map = normalize_device_map(order_id, order.get("deviceStatusByKey"))
        status_map[key] = OrderStatus.RE_OFFERED_PENDING.value
        offers = normalize_device_map(order_id, order.get("reOfferByDevice"))
        offers[key] = offer

        fields: Dict[str, Any] = {"reOffer": offer, "deviceStatusByKey": status_map, "reOfferByDevice": offers}
        # any open offer puts the whole order back into pending
        if coerce_status(order.get("status")) is not OrderStatus.RE_OFFERED_PENDING:
            fields["status"] = OrderStatus.RE_OFFERED_PENDING
        entries = [
            ActivityLogWriter.entry(
                "reoffer",
                f"Revised offer of ${price:.2f} created.",
                metadata={"deviceKey": key, "reasons": list(reasons)},
            )
        ]
        if "status" in fields:
            entries.insert(0, ActivityLogWriter.status_changed(fields["status"], via="reoffer", deviceKey=key))

        updated = await self.store.merge_write(
            order_id, fields, log_entries=entries, auto_log_status=False, now=now
        )
        await self.dispatcher.dispatch(
            [
                notifications.reoffer_created(
                    updated, new_price=f"{price:.2f}", auto_accept_date=auto_accept_at.date().isoformat()
                )
            ],
            now=now,
        )
        logger.info("order %s: re-offer %.2f for %s", order_id, price, key)
        return {
            "message": "Re-offer submitted successfully",
            "orderId": order_id,
            "deviceKey": key,
            "newPrice": price,
            "autoAcceptDate": offer["autoAcceptDate"],
            "status": updated.get("status"),
        }

    async def respond(
        self,
        order_id: str,
        *,
        accept: bool,
        device_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        order = await self._load(order_id)
        key = resolve_device_key(order_id, device_key)
        status_map = normalize_device_map(order_id, order.get("deviceStatusByKey"))

        current = device_status_of(order, status_map, key)
        if current != PENDING:
            # already answered (or auto-accepted): report the prior outcome
            return {
                "message": "This offer has already been accepted or declined.",
                "orderId": order_id,
                "deviceKey": key,
                "deviceStatus": status_map.get(key) or order.get("status"),
                "alreadyResolved": True,
            }

        outcome = OrderStatus.RE_OFFERED_ACCEPTED if accept else OrderStatus.RE_OFFERED_DECLINED
        status_map[key] = outcome.value
        fields: Dict[str, Any] = {
            "deviceStatusByKey": status_map,
            ("acceptedAt" if accept else "declinedAt"): SERVER_TIMESTAMP,
        }
        fields.update(_status_fields(order, status_map, outcome))
        entries = [
            ActivityLogWriter.entry(
                "reoffer",
                "Customer accepted the revised offer." if accept else "Customer declined the revised offer.",
                metadata={"deviceKey": key},
            )
        ]
        if "status" in fields:
            assert_transition(TransitionSource.REOFFER, order.get("status"), fields["status"])
            entries.insert(0, ActivityLogWriter.status_changed(fields["status"], via="reoffer", deviceKey=key))

        updated = await self.store.merge_write(
            order_id, fields, log_entries=entries, auto_log_status=False, now=now
        )
        await self.dispatcher.dispatch(
            [notifications.reoffer_response(updated, accepted=accept, device_key=key)], now=now
        )
        return {
            "message": "Offer accepted successfully." if accept else "Return requested successfully.",
            "orderId": order_id,
            "deviceKey": key,
            "deviceStatus": outcome.value,
            "status": updated.get("status"),
        }

    async def accept_reoffer(self, order_id: str, **kwargs: Any) -> Dict[str, Any]:
        return await self.respond(order_id, accept=True, **kwargs)

    async def decline_reoffer(self, order_id: str, **kwargs: Any) -> Dict[str, Any]:
        return await self.respond(order_id, accept=False, **kwargs)

    async def expire_reoffers(self, order: Order, *, now: Optional[datetime] = None) -> ExpiryResult:
        now = now or utcnow()
        order_id = str(order["id"])
        expired = expired_device_keys(order, now)
        if not expired:
            return ExpiryResult(order=order)

        status_map = normalize_device_map(order_id, order.get("deviceStatusByKey"))
        for key in expired:
            status_map[key] = OrderStatus.RE_OFFERED_AUTO_ACCEPTED.value

        fields: Dict[str, Any] = {"deviceStatusByKey": status_map, "acceptedAt": SERVER_TIMESTAMP}
        fields.update(_status_fields(order, status_map, OrderStatus.RE_OFFERED_AUTO_ACCEPTED))
        entries = [
            ActivityLogWriter.entry(
                "reoffer",
                f"Revised offer auto-accepted for {len(expired)} device(s).",
                metadata={"deviceKeys": expired, "auto": True},
            )
        ]
        if "status" in fields:
            entries.insert(0, ActivityLogWriter.status_changed(fields["status"], via="reoffer", auto=True))

        updated = await self.store.merge_write(
            order_id, fields, log_entries=entries, auto_log_status=False, now=now
        )

        offers = normalize_device_map(order_id, order.get("reOfferByDevice"))
        prices = [
            _money(offers[k].get("newPrice"))
            for k in expired
            if isinstance(offers.get(k), Mapping)
        ]
        prices = [p for p in prices if p is not None]
        if not prices:
            fallback = _money((order.get("reOffer") or {}).get("newPrice"))
            prices = [fallback] if fallback is not None else []
        price_text = ", ".join(f"${p:.2f}" for p in prices) or "the revised amount"

        await self.dispatcher.dispatch(
            [notifications.reoffer_auto_accepted(updated, device_keys=expired, price_text=price_text)], now=now
        )
        return ExpiryResult(order=updated, expired_keys=expired, status=fields.get("status"))
