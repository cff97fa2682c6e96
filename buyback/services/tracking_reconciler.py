# buyback/services/tracking_reconciler.py
"""
Inbound / outbound tracking reconciliation.

Flow for one order:
  1) eligibility (tracking number present, status awaiting the device,
     not an "emailed" order waiting on a balance payment)
  2) cooldown: a non-forced refresh inside the minimum interval is a
     skip, not an error, and makes no carrier call
  3) carrier fetch (carrier code from the ordered resolver list)
  4) normalize → movement
  5) derive the candidate status for the order's shipment type
  6) apply only forward progress, with the leg timestamp and one
     activity entry
  7) device-received notification, at most once per order

Carrier errors and missing credentials propagate to the caller; the
scheduled sweep catches them per order.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from buyback.core.config import AppSettings
from buyback.core.errors import CredentialsMissing, EngineError, InvalidRequest, OrderNotFound
from buyback.domain.ports import Order, OrderStore, TrackingClient, TrackingInfo
from buyback.domain.resolvers import (
    INBOUND,
    OUTBOUND,
    field as doc_field,
    latest_timestamp,
    resolve_carrier_code,
    resolve_tracking_number,
)
from buyback.domain.statuses import (
    INBOUND_DIRECTION_STATUSES,
    INBOUND_LOCK_STATUSES,
    INBOUND_TRACKABLE_STATUSES,
    KIT_TRANSIT_STATUS,
    OrderStatus,
    TransitionSource,
    can_transition,
    coerce_status,
    has_balance_email_flag,
    is_email_label_order,
    is_forward_progress,
    is_kit_order,
    is_status_past_received,
    normalize_status,
    should_promote_kit_status,
)
from buyback.obs.metrics import tracking_sync_total
from buyback.services import notifications
from buyback.services.activity_log import ActivityLogWriter
from buyback.services.notifications import NotificationDispatcher
from buyback.services.order_store import SERVER_TIMESTAMP
from buyback.services.tracking_normalizer import (
    TrackingSnapshot,
    TrackingStatus,
    map_outbound_status,
    snapshot_of,
)
from buyback.utils.time import utcnow

logger = logging.getLogger("buyback.tracking")

KIT_MODE = "kit"
INBOUND_MODE = "inbound"

COOLDOWN_ACCESSORS = {
    KIT_MODE: (
        doc_field("kitTrackingLastRefreshedAt"),
        doc_field("outboundTrackingLastSyncedAt"),
        doc_field("lastTrackingRefreshAt"),
    ),
    INBOUND_MODE: (
        doc_field("labelTrackingLastSyncedAt"),
        doc_field("inboundTrackingLastRefreshedAt"),
        doc_field("lastTrackingRefreshAt"),
    ),
}

PAST_RECEIVED_REASON = "Order already received/completed. Tracking refresh skipped."


@dataclass(frozen=True)
class InboundStatusUpdate:
    next_status: OrderStatus
    mark_kit_delivered: bool = False
    auto_receive: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nextStatus": self.next_status.value,
            "markKitDelivered": self.mark_kit_delivered,
            "autoReceive": self.auto_receive,
        }


@dataclass
class SyncResult:
    order: Order
    tracking: Optional[Dict[str, Any]] = None
    skipped: Optional[str] = None
    reason: Optional[str] = None
    normalized_status: Optional[TrackingStatus] = None
    status_update: Optional[InboundStatusUpdate] = None
    applied: bool = False
    notified: bool = False


@dataclass
class KitRefreshResult:
    order: Optional[Order] = None
    message: Optional[str] = None
    delivered: bool = False
    direction: Optional[str] = None
    tracking: Optional[Dict[str, Any]] = None
    skipped: bool = False
    reason: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        if self.skipped:
            return {"skipped": True, "reason": self.reason}
        order = self.order or {}
        return {
            "message": self.message,
            "delivered": self.delivered,
            "direction": self.direction,
            "tracking": self.tracking,
            "order": {"id": order.get("id"), "status": order.get("status")},
        }


# ==========================================================
# Pure decision helpers
# ==========================================================


def should_track_inbound(order: Mapping[str, Any]) -> bool:
    status = coerce_status(order.get("status"))
    if status not in INBOUND_TRACKABLE_STATUSES:
        return False
    if status is OrderStatus.EMAILED and has_balance_email_flag(order):
        return False
    return bool(resolve_tracking_number(order, INBOUND))


def inbound_base_status(order: Mapping[str, Any]) -> OrderStatus:
    """Status an order falls back to while its inbound package has not moved."""
    if is_kit_order(order):
        return OrderStatus.KIT_DELIVERED if order.get("kitDeliveredAt") else OrderStatus.KIT_SENT
    return OrderStatus.LABEL_GENERATED


def derive_inbound_status_update(
    order: Mapping[str, Any], snapshot: TrackingSnapshot
) -> Optional[InboundStatusUpdate]:
    current = coerce_status(order.get("status"))
    kit = is_kit_order(order)

    if snapshot.delivered:
        if current is OrderStatus.DELIVERED_TO_US:
            return None
        if kit:
            # kit orders still need an explicit receive step
            if current is OrderStatus.RECEIVED:
                return None
            return InboundStatusUpdate(OrderStatus.DELIVERED_TO_US, mark_kit_delivered=True)
        return InboundStatusUpdate(OrderStatus.DELIVERED_TO_US, auto_receive=is_email_label_order(order))

    if snapshot.has_movement and (kit or is_email_label_order(order)):
        return InboundStatusUpdate(OrderStatus.PHONE_ON_THE_WAY)

    base = inbound_base_status(order)
    if base is not current and current not in INBOUND_LOCK_STATUSES:
        return InboundStatusUpdate(base)
    return None


def describe_cooldown(
    order: Mapping[str, Any], mode: str, *, now: datetime, interval: timedelta
) -> Optional[str]:
    if interval.total_seconds() <= 0:
        return None
    last = latest_timestamp(order, COOLDOWN_ACCESSORS[mode])
    if last is None:
        return None
    elapsed = now - last
    if elapsed >= interval:
        return None
    remaining = min(interval - elapsed, interval)
    minutes = max(1, math.ceil(remaining.total_seconds() / 60))
    label = "Inbound tracking" if mode == INBOUND_MODE else "Kit tracking"
    plural = "" if minutes == 1 else "s"
    return f"{label} was refreshed recently. Try again in about {minutes} minute{plural}."


def _status_fields_for_inbound(order: Mapping[str, Any], update: InboundStatusUpdate) -> Dict[str, Any]:
    fields: Dict[str, Any] = {"status": update.next_status}
    if update.next_status is OrderStatus.DELIVERED_TO_US:
        if update.mark_kit_delivered or is_kit_order(order):
            fields["kitDeliveredToUsAt"] = SERVER_TIMESTAMP
        if update.auto_receive or (is_email_label_order(order) and not order.get("receivedAt")):
            fields["receivedAt"] = SERVER_TIMESTAMP
            fields["autoReceived"] = True
    elif update.next_status is OrderStatus.RECEIVED:
        fields["receivedAt"] = SERVER_TIMESTAMP
        fields["autoReceived"] = True
    return fields


def is_applicable(source: TransitionSource, current: Any, candidate: OrderStatus) -> bool:
    """Candidate differs from current, moves forward, and is an edge in the table."""
    if normalize_status(current) == candidate.value:
        return False
    if not is_forward_progress(current, candidate):
        return False
    return can_transition(source, current, candidate)


# ==========================================================
# Reconciler
# ==========================================================


class TrackingReconciler:
    def __init__(
        self,
        store: OrderStore,
        carrier: TrackingClient,
        dispatcher: NotificationDispatcher,
        settings: AppSettings,
    ) -> None:
        self.store = store
        self.carrier = carrier
        self.dispatcher = dispatcher
        self.settings = settings

    @property
    def cooldown(self) -> timedelta:
        return timedelta(seconds=self.settings.TRACKING_REFRESH_MIN_INTERVAL_SECONDS)

    def _require_credentials(self) -> None:
        if not getattr(self.carrier, "configured", True):
            raise CredentialsMissing("Tracking API credentials are not configured.")

    async def _load(self, order_id: str) -> Order:
        order = await self.store.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def _fetch(self, tracking_number: str, carrier_code: str, direction: str) -> Optional[TrackingInfo]:
        try:
            return await self.carrier.fetch_tracking(tracking_number, carrier_code)
        except EngineError:
            tracking_sync_total.labels(direction, "failed").inc()
            raise

    # ---------------- inbound (customer → us) ----------------

    async def sync_inbound_tracking(
        self,
        order: Order,
        *,
        force: bool = False,
        source: str = "system_automatic",
        now: Optional[datetime] = None,
    ) -> SyncResult:
        now = now or utcnow()
        order_id = str(order["id"])
        tracking_number = resolve_tracking_number(order, INBOUND)
        if not tracking_number:
            return SyncResult(order=order, skipped="no_tracking")
        if not should_track_inbound(order):
            return SyncResult(order=order, skipped="not_trackable")

        if not force:
            cooldown_message = describe_cooldown(order, INBOUND_MODE, now=now, interval=self.cooldown)
            if cooldown_message:
                tracking_sync_total.labels(INBOUND, "skipped").inc()
                return SyncResult(order=order, skipped="recently_refreshed", reason=cooldown_message)

        self._require_credentials()
        carrier_code = resolve_carrier_code(order, INBOUND, self.settings.DEFAULT_CARRIER_CODE)
        info = await self._fetch(tracking_number, carrier_code, INBOUND)
        refresh_source = str(source or "system_automatic").lower()

        if info is None:
            updated = await self.store.merge_write(
                order_id,
                {
                    "labelTrackingLastSyncedAt": SERVER_TIMESTAMP,
                    "lastTrackingRefreshAt": SERVER_TIMESTAMP,
                    "lastTrackingRefreshSource": refresh_source,
                },
                log_entries=[
                    ActivityLogWriter.entry(
                        "tracking",
                        "Inbound label tracking sync attempted but the carrier returned no data.",
                        metadata={"trackingNumber": tracking_number},
                    )
                ],
                auto_log_status=False,
                now=now,
            )
            tracking_sync_total.labels(INBOUND, "skipped").inc()
            return SyncResult(order=updated, skipped="no_data")

        snapshot = snapshot_of(info)
        fields: Dict[str, Any] = {
            "labelTrackingStatus": info.status_code,
            "labelTrackingStatusDescription": info.status_description,
            "labelTrackingCarrierStatusCode": info.carrier_status_code,
            "labelTrackingCarrierStatusDescription": info.carrier_status_description,
            "labelTrackingEstimatedDelivery": info.estimated_delivery,
            "labelTrackingEvents": list(info.events),
            "labelTrackingLastSyncedAt": SERVER_TIMESTAMP,
            "lastTrackingRefreshAt": SERVER_TIMESTAMP,
            "lastTrackingRefreshSource": refresh_source,
        }
        if snapshot.delivered and not order.get("labelDeliveredAt"):
            fields["labelDeliveredAt"] = SERVER_TIMESTAMP

        update = derive_inbound_status_update(order, snapshot)
        applied = False
        entries: List[Dict[str, Any]] = []
        if update and is_applicable(TransitionSource.INBOUND_TRACKING, order.get("status"), update.next_status):
            fields.update(_status_fields_for_inbound(order, update))
            entries.append(
                ActivityLogWriter.status_changed(
                    update.next_status,
                    via="inbound_tracking",
                    trackingNumber=tracking_number,
                    source="inbound_tracking",
                )
            )
            applied = True
        elif update:
            logger.debug(
                "order %s: inbound candidate %s rejected (current=%s)",
                order_id,
                update.next_status.value,
                order.get("status"),
            )

        updated = await self.store.merge_write(
            order_id, fields, log_entries=entries, auto_log_status=False, now=now
        )
        tracking_sync_total.labels(INBOUND, "applied" if applied else "unchanged").inc()

        notified = False
        if applied and ("receivedAt" in fields or update.next_status is OrderStatus.RECEIVED):
            sent = await self.dispatcher.dispatch(
                [notifications.device_received(updated, tracking_number=tracking_number)], now=now
            )
            notified = sent > 0

        if applied:
            logger.info(
                "order %s: %s → %s via inbound tracking (%s)",
                order_id,
                order.get("status"),
                update.next_status.value,
                info.status_code,
            )
        return SyncResult(
            order=updated,
            tracking=info.to_dict(),
            normalized_status=snapshot.status,
            status_update=update,
            applied=applied,
            notified=notified,
        )

    async def sync_label_tracking(
        self,
        order_id: str,
        *,
        force: bool = False,
        source: str = "admin_manual",
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        order = await self._load(order_id)
        if is_status_past_received(order):
            return {"skipped": True, "reason": PAST_RECEIVED_REASON}

        result = await self.sync_inbound_tracking(order, force=force, source=source, now=now)
        reasons = {
            "no_tracking": "No inbound tracking number on file for this order.",
            "not_trackable": "Order is not waiting on an inbound shipment.",
            "no_data": "Tracking API returned no inbound data for this order.",
        }
        if result.skipped == "recently_refreshed":
            return {"skipped": True, "reason": result.reason or "Inbound tracking was refreshed recently."}
        if result.skipped:
            return {"skipped": True, "reason": reasons.get(result.skipped, result.skipped)}

        return {
            "message": "Label tracking synchronized.",
            "order": {"id": result.order.get("id"), "status": result.order.get("status")},
            "tracking": result.tracking,
            "statusUpdate": result.status_update.to_dict() if result.status_update else None,
        }

    # ---------------- kit refresh (either leg) ----------------

    async def refresh_kit_tracking(
        self,
        order_id: str,
        *,
        force: bool = False,
        source: str = "admin_manual",
        now: Optional[datetime] = None,
    ) -> KitRefreshResult:
        now = now or utcnow()
        order = await self._load(order_id)

        if is_status_past_received(order):
            return KitRefreshResult(order=order, skipped=True, reason=PAST_RECEIVED_REASON)

        has_outbound = bool(resolve_tracking_number(order, OUTBOUND))
        has_inbound = bool(resolve_tracking_number(order, INBOUND))
        if not has_outbound and not has_inbound:
            return KitRefreshResult(
                order=order, skipped=True, reason="No tracking numbers available for this order."
            )

        if not force:
            cooldown_message = describe_cooldown(order, KIT_MODE, now=now, interval=self.cooldown)
            if cooldown_message:
                tracking_sync_total.labels(KIT_MODE, "skipped").inc()
                return KitRefreshResult(order=order, skipped=True, reason=cooldown_message)

        self._require_credentials()

        current = coerce_status(order.get("status"))
        kit_status = order.get("kitTrackingStatus")
        last_direction = str(kit_status.get("direction") or "").lower() if isinstance(kit_status, Mapping) else ""
        prefers_inbound = has_inbound and (
            last_direction == INBOUND or current in INBOUND_DIRECTION_STATUSES
        )
        use_inbound = (not has_outbound and has_inbound) or prefers_inbound
        direction = INBOUND if use_inbound else OUTBOUND

        tracking_number = resolve_tracking_number(order, direction) or ""
        carrier_code = resolve_carrier_code(order, direction, self.settings.DEFAULT_CARRIER_CODE)
        info = await self._fetch(tracking_number, carrier_code, direction)
        refresh_source = str(source or "admin_manual").lower()

        stamps: Dict[str, Any] = {
            "kitTrackingLastRefreshedAt": SERVER_TIMESTAMP,
            "lastTrackingRefreshAt": SERVER_TIMESTAMP,
            "lastTrackingRefreshSource": refresh_source,
        }
        if use_inbound:
            stamps["inboundTrackingLastRefreshedAt"] = SERVER_TIMESTAMP

        if info is None:
            updated = await self.store.merge_write(order_id, stamps, auto_log_status=False, now=now)
            tracking_sync_total.labels(direction, "skipped").inc()
            return KitRefreshResult(
                order=updated, skipped=True, reason="Tracking API returned no data for this order."
            )

        snapshot = snapshot_of(info)
        status_payload = {
            "statusCode": info.status_code,
            "statusDescription": info.status_description or info.carrier_status_description or "",
            "carrierCode": carrier_code,
            "lastUpdated": info.updated_at,
            "estimatedDelivery": info.estimated_delivery,
            "trackingNumber": tracking_number,
            "direction": direction,
        }
        fields: Dict[str, Any] = {"kitTrackingStatus": status_payload, **stamps}

        candidate_fields = (
            self._inbound_kit_fields(order, snapshot) if use_inbound else self._outbound_kit_fields(order, snapshot)
        )
        applied = bool(candidate_fields)
        entries: List[Dict[str, Any]] = []
        if applied:
            fields.update(candidate_fields)
            entries.append(
                ActivityLogWriter.status_changed(
                    candidate_fields["status"],
                    via="inbound_tracking" if use_inbound else "kit_tracking",
                    trackingNumber=tracking_number,
                    source=refresh_source,
                )
            )
        elif normalize_status(order.get("status")) != str(order.get("status") or "").strip().lower():
            # legacy spelling on file (e.g. phone_on_the_way_to_us): store the canonical value
            fields["status"] = normalize_status(order.get("status"))

        updated = await self.store.merge_write(
            order_id, fields, log_entries=entries, auto_log_status=False, now=now
        )
        tracking_sync_total.labels(direction, "applied" if applied else "unchanged").inc()

        delivered = snapshot.delivered
        if use_inbound and applied and "receivedAt" in candidate_fields:
            await self.dispatcher.dispatch(
                [notifications.device_received(updated, tracking_number=tracking_number)], now=now
            )

        if use_inbound:
            if delivered:
                message = (
                    "Inbound kit marked as delivered to us."
                    if updated.get("status") == OrderStatus.DELIVERED_TO_US.value
                    else "Inbound device marked as delivered."
                )
            else:
                message = "Inbound tracking status refreshed."
        else:
            message = "Kit marked as delivered." if delivered else "Kit tracking status refreshed."

        if delivered and not use_inbound and should_track_inbound(updated):
            try:
                inbound = await self.sync_inbound_tracking(updated, force=True, source=refresh_source, now=now)
                updated = inbound.order
            except EngineError:
                logger.exception("order %s: inbound sync after kit delivery failed", order_id)

        return KitRefreshResult(
            order=updated,
            message=message,
            delivered=delivered,
            direction=direction,
            tracking=status_payload,
        )

    def _outbound_kit_fields(self, order: Mapping[str, Any], snapshot: TrackingSnapshot) -> Dict[str, Any]:
        current = order.get("status")
        if snapshot.delivered:
            candidate = OrderStatus.KIT_DELIVERED
        elif snapshot.has_movement:
            candidate = KIT_TRANSIT_STATUS
        else:
            candidate = OrderStatus.KIT_SENT
        if not should_promote_kit_status(current, candidate):
            return {}

        fields: Dict[str, Any] = {"status": candidate}
        if candidate is OrderStatus.KIT_DELIVERED and not order.get("kitDeliveredAt"):
            fields["kitDeliveredAt"] = SERVER_TIMESTAMP
        if candidate is not OrderStatus.KIT_DELIVERED and not order.get("kitSentAt"):
            fields["kitSentAt"] = SERVER_TIMESTAMP
        return fields

    def _inbound_kit_fields(self, order: Mapping[str, Any], snapshot: TrackingSnapshot) -> Dict[str, Any]:
        current = coerce_status(order.get("status"))
        if snapshot.delivered:
            update = InboundStatusUpdate(
                OrderStatus.DELIVERED_TO_US,
                mark_kit_delivered=is_kit_order(order),
                auto_receive=is_email_label_order(order),
            )
        elif snapshot.has_movement:
            update = InboundStatusUpdate(OrderStatus.PHONE_ON_THE_WAY)
        else:
            base = inbound_base_status(order)
            if base is current or current in INBOUND_LOCK_STATUSES:
                return {}
            update = InboundStatusUpdate(base)

        if not is_applicable(TransitionSource.INBOUND_TRACKING, order.get("status"), update.next_status):
            return {}
        return _status_fields_for_inbound(order, update)

    # ---------------- outbound (kit → customer) ----------------

    async def sync_outbound_tracking(
        self, order_id: str, *, source: str = "admin_manual", now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        now = now or utcnow()
        order = await self._load(order_id)
        tracking_number = resolve_tracking_number(order, OUTBOUND)
        if not tracking_number:
            raise InvalidRequest("No outbound tracking number on file.", context={"order_id": order_id})
        self._require_credentials()

        carrier_code = resolve_carrier_code(order, OUTBOUND, self.settings.DEFAULT_CARRIER_CODE)
        info = await self._fetch(tracking_number, carrier_code, OUTBOUND)
        fields: Dict[str, Any] = {
            "outboundTrackingLastSyncedAt": SERVER_TIMESTAMP,
            "lastTrackingRefreshAt": SERVER_TIMESTAMP,
            "lastTrackingRefreshSource": str(source or "admin_manual").lower(),
        }
        if info is None:
            updated = await self.store.merge_write(order_id, fields, auto_log_status=False, now=now)
            return {
                "message": "Outbound tracking returned no data.",
                "order": {"id": updated.get("id"), "status": updated.get("status")},
                "tracking": None,
                "statusUpdated": False,
            }

        fields.update(
            {
                "outboundTrackingStatus": info.status_code,
                "outboundTrackingStatusDescription": info.status_description,
                "outboundTrackingEstimatedDelivery": info.estimated_delivery,
                "outboundTrackingEvents": list(info.events),
            }
        )
        candidate = map_outbound_status(info.status_code) or map_outbound_status(
            info.carrier_status_code
        )
        entries: List[Dict[str, Any]] = []
        promoted = candidate is not None and should_promote_kit_status(order.get("status"), candidate)
        if promoted:
            fields["status"] = candidate
            if candidate is OrderStatus.KIT_DELIVERED and not order.get("kitDeliveredAt"):
                fields["kitDeliveredAt"] = SERVER_TIMESTAMP
            entries.append(
                ActivityLogWriter.status_changed(
                    candidate, via="kit_tracking", trackingNumber=tracking_number, source="outbound_tracking"
                )
            )

        updated = await self.store.merge_write(
            order_id, fields, log_entries=entries, auto_log_status=False, now=now
        )
        tracking_sync_total.labels(OUTBOUND, "applied" if promoted else "unchanged").inc()
        return {
            "message": "Outbound tracking synchronized.",
            "order": {"id": updated.get("id"), "status": updated.get("status")},
            "tracking": info.to_dict(),
            "statusUpdated": promoted,
        }
