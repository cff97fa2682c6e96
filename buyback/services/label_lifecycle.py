# buyback/services/label_lifecycle.py
"""
Prepaid shipping label lifecycle: void + cancel.

Label states:
  active → voided       (provider approved; terminal)
  active → void_denied  (provider refused; terminal)
  active → void_error   (timeout / transport / 5xx; retried later)

Rules:
  - a terminal label short-circuits with its prior outcome and never hits
    the provider again, so re-running a void is idempotent
  - any newly approved void cancels the order and clears the shipment
    identifying fields; the label map itself is kept
  - aggregate flags (hasActiveShipEngineLabel, shipEngineLabelIds, legacy
    primary mirrors) are recomputed after every attempt
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from buyback.core.config import AppSettings
from buyback.core.errors import (
    CancellationNotAllowed,
    CredentialsMissing,
    EngineError,
    InvalidRequest,
    OrderNotFound,
    TransientExternalError,
)
from buyback.domain.ports import LabelVoidClient, Order, OrderStore
from buyback.domain.resolvers import LABEL_GENERATED_AT_ACCESSORS, first_present, first_timestamp
from buyback.domain.statuses import (
    OrderStatus,
    TransitionSource,
    can_transition,
    coerce_status,
    is_email_label_order,
    is_kit_order,
)
from buyback.obs.metrics import label_void_total
from buyback.services import notifications
from buyback.services.activity_log import ActivityLogWriter
from buyback.services.notifications import NotificationDispatcher
from buyback.services.order_store import DELETE, SERVER_TIMESTAMP
from buyback.utils.time import iso, to_datetime, utcnow

logger = logging.getLogger("buyback.labels")

MANUAL = "manual"
AUTOMATIC = "automatic"

LABEL_ACTIVE = "active"
LABEL_VOIDED = "voided"
LABEL_VOID_DENIED = "void_denied"
LABEL_VOID_ERROR = "void_error"
TERMINAL_LABEL_STATUSES = frozenset({LABEL_VOIDED, LABEL_VOID_DENIED})

DEFAULT_CANCEL_REASON = "cancelled_by_admin"

# shipment identifying fields removed once a label is voided
SHIPMENT_CLEANUP_FIELDS = (
    "trackingNumber",
    "inboundTrackingNumber",
    "outboundTrackingNumber",
    "returnTrackingNumber",
    "uspsLabelUrl",
    "returnLabelUrl",
    "inboundLabelUrl",
    "outboundLabelUrl",
    "labelPdfUrl",
    "labelDownloadUrl",
    "labelDeliveryMethod",
    "labelTrackingStatus",
    "labelTrackingStatusDescription",
    "labelTrackingCarrierCode",
    "labelTrackingCarrierStatusCode",
    "labelTrackingCarrierStatusDescription",
    "labelTrackingEstimatedDelivery",
    "labelTrackingEvents",
    "labelTrackingLastSyncedAt",
    "outboundTrackingStatus",
    "outboundTrackingStatusDescription",
    "outboundTrackingCarrierCode",
    "outboundTrackingCarrierStatusCode",
    "outboundTrackingCarrierStatusDescription",
    "outboundTrackingEstimatedDelivery",
    "outboundTrackingEvents",
    "outboundTrackingLastSyncedAt",
    "kitTrackingStatus",
)


@dataclass(frozen=True)
class LabelSelection:
    key: str
    id: Optional[str] = None


@dataclass
class VoidResult:
    key: Optional[str]
    label_id: Optional[str]
    approved: bool
    message: str
    error: bool = False
    short_circuit: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "key": self.key,
            "labelId": self.label_id,
            "approved": self.approved,
            "message": self.message,
        }
        if self.error:
            out["error"] = True
        return out


@dataclass
class VoidOutcome:
    results: List[VoidResult]
    updates: Dict[str, Any]
    changed: bool
    order: Optional[Order] = None

    @property
    def approved(self) -> List[VoidResult]:
        return [r for r in self.results if r.approved and not r.short_circuit]


@dataclass
class CancelOutcome:
    order: Order
    void_results: List[VoidResult] = field(default_factory=list)
    already_cancelled: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "message": "Order already cancelled." if self.already_cancelled else "Order cancelled.",
            "order": {"id": self.order.get("id"), "status": self.order.get("status")},
            "voidResults": [r.to_dict() for r in self.void_results],
        }


# ==========================================================
# Label map helpers
# ==========================================================


def display_name_for(key: str) -> str:
    spaced = "".join(f" {c}" if c.isupper() else c for c in str(key))
    words = spaced.replace("_", " ").replace("-", " ").split()
    return " ".join(w.capitalize() for w in words) + " Label"


def normalize_label_map(order: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    """
    The order's labels keyed by role.

    Orders written before the label map existed carry a single
    shipEngineLabelId; it is read as the "primary" label.
    """
    raw = order.get("shipEngineLabels")
    labels: Dict[str, Dict[str, Any]] = {}
    if isinstance(raw, Mapping):
        for key, entry in raw.items():
            if isinstance(entry, Mapping):
                labels[str(key)] = copy.deepcopy(dict(entry))

    if not labels and order.get("shipEngineLabelId"):
        labels["primary"] = {
            "id": order.get("shipEngineLabelId"),
            "status": order.get("labelVoidStatus") or LABEL_ACTIVE,
            "message": order.get("labelVoidMessage"),
            "trackingNumber": order.get("trackingNumber"),
            "generatedAt": first_present(order, LABEL_GENERATED_AT_ACCESSORS, coerce=lambda v: v or None),
            "displayName": "Primary Shipping Label",
        }
    return labels


def label_status(entry: Optional[Mapping[str, Any]]) -> str:
    if not entry:
        return ""
    raw = entry.get("status") or entry.get("voidStatus") or entry.get("state") or LABEL_ACTIVE
    return str(raw).strip().lower()


def is_label_pending_void(entry: Optional[Mapping[str, Any]]) -> bool:
    return label_status(entry) not in TERMINAL_LABEL_STATUSES


def label_ids(labels: Mapping[str, Mapping[str, Any]]) -> List[str]:
    return [str(e["id"]) for e in labels.values() if isinstance(e, Mapping) and e.get("id")]


def pending_selections(order: Mapping[str, Any]) -> List[LabelSelection]:
    labels = normalize_label_map(order)
    return [
        LabelSelection(key=key, id=str(entry["id"]))
        for key, entry in labels.items()
        if entry.get("id") and is_label_pending_void(entry)
    ]


def label_generated_at(order: Mapping[str, Any], entry: Mapping[str, Any]) -> Optional[datetime]:
    return to_datetime(entry.get("generatedAt")) or to_datetime(entry.get("createdAt")) or first_timestamp(
        order, LABEL_GENERATED_AT_ACCESSORS
    )


def last_auto_void_attempt(order: Mapping[str, Any], entry: Mapping[str, Any]) -> Optional[datetime]:
    return to_datetime(entry.get("autoVoidAttemptedAt")) or to_datetime(entry.get("lastVoidAttemptAt"))


def auto_void_skip_reason(
    order: Mapping[str, Any],
    entry: Mapping[str, Any],
    *,
    now: datetime,
    min_age: timedelta,
    retry_after: timedelta,
    max_attempts: int = 0,
) -> Optional[str]:
    """None when the label is due for an automatic void, else why not."""
    if not entry.get("id"):
        return "no_label_id"
    if not is_label_pending_void(entry):
        return "already_final"
    generated = label_generated_at(order, entry)
    if generated is None:
        return "no_generated_at"
    if now - generated < min_age:
        return "too_recent"
    last_attempt = last_auto_void_attempt(order, entry)
    if last_attempt is not None and now - last_attempt < retry_after:
        return "retry_backoff"
    if max_attempts > 0 and int(entry.get("voidAttemptCount") or 0) >= max_attempts:
        return "attempts_exhausted"
    return None


def aggregate_label_fields(labels: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    ids = label_ids(labels)
    pending = [e for e in labels.values() if e.get("id") and is_label_pending_void(e)]
    fields: Dict[str, Any] = {
        "shipEngineLabels": dict(labels),
        "hasShipEngineLabel": bool(ids),
        "hasActiveShipEngineLabel": bool(pending),
        "shipEngineLabelIds": ids,
    }
    primary = labels.get("primary")
    if primary:
        fields["shipEngineLabelId"] = primary.get("id")
        fields["labelVoidStatus"] = primary.get("status")
        fields["labelVoidMessage"] = primary.get("message")
        if primary.get("voidedAt"):
            fields["labelVoidedAt"] = primary["voidedAt"]
    return fields


def shipment_cleanup_fields() -> Dict[str, Any]:
    return {name: DELETE for name in SHIPMENT_CLEANUP_FIELDS}


# ==========================================================
# Manager
# ==========================================================


class LabelLifecycleManager:
    def __init__(
        self,
        store: OrderStore,
        void_client: LabelVoidClient,
        dispatcher: NotificationDispatcher,
        settings: AppSettings,
    ) -> None:
        self.store = store
        self.void_client = void_client
        self.dispatcher = dispatcher
        self.settings = settings

    async def void_labels(
        self,
        order: Order,
        selections: Sequence[LabelSelection],
        *,
        reason: str = MANUAL,
        now: Optional[datetime] = None,
    ) -> VoidOutcome:
        if not order or not order.get("id"):
            raise InvalidRequest("Order context is required to void labels.")
        if not selections:
            raise InvalidRequest("At least one label must be selected for voiding.")
        if not getattr(self.void_client, "configured", True):
            raise CredentialsMissing("Label provider API key not configured.")

        now = now or utcnow()
        stamp = iso(now)
        order_id = str(order["id"])
        labels = normalize_label_map(order)
        attempt_field = "autoVoidAttemptedAt" if reason == AUTOMATIC else "manualVoidAttemptedAt"
        results: List[VoidResult] = []
        changed = False

        for selection in selections:
            key = selection.key
            entry = dict(labels.get(key) or {})
            label_id = selection.id or entry.get("id") or order.get("shipEngineLabelId")
            if not label_id:
                results.append(VoidResult(key, None, False, "No label identifier found for selection."))
                continue

            entry["id"] = str(label_id)
            entry.setdefault("displayName", display_name_for(key))

            status = label_status(entry)
            if status in TERMINAL_LABEL_STATUSES:
                prior = entry.get("message") or (
                    "Label has already been voided."
                    if status == LABEL_VOIDED
                    else "Label void request was previously denied."
                )
                results.append(
                    VoidResult(key, entry["id"], status == LABEL_VOIDED, str(prior), short_circuit=True)
                )
                labels[key] = entry
                label_void_total.labels("short_circuit").inc()
                continue

            entry["lastVoidAttemptAt"] = stamp
            entry[attempt_field] = stamp
            entry["voidAttemptCount"] = int(entry.get("voidAttemptCount") or 0) + 1
            if not entry.get("generatedAt"):
                generated = label_generated_at(order, entry)
                entry["generatedAt"] = iso(generated) if generated else stamp

            try:
                response = await self.void_client.void_label(entry["id"])
            except TransientExternalError as e:
                entry["status"] = entry["voidStatus"] = LABEL_VOID_ERROR
                entry["message"] = entry["voidMessage"] = e.message
                labels[key] = entry
                changed = True
                results.append(VoidResult(key, entry["id"], False, e.message, error=True))
                label_void_total.labels(LABEL_VOID_ERROR).inc()
                logger.warning("order %s: void of label %s failed: %s", order_id, entry["id"], e.message)
                continue

            outcome = LABEL_VOIDED if response.approved else LABEL_VOID_DENIED
            entry["status"] = entry["voidStatus"] = outcome
            entry["message"] = entry["voidMessage"] = response.message
            if response.approved:
                entry["voidedAt"] = stamp
            labels[key] = entry
            changed = True
            results.append(VoidResult(key, entry["id"], response.approved, response.message))
            label_void_total.labels(outcome).inc()
            logger.info(
                "order %s: label %s %s (%s)",
                order_id,
                entry["id"],
                "voided" if response.approved else "void denied",
                reason,
            )

        updates = aggregate_label_fields(labels)
        updates["shipEngineLabelsLastUpdatedAt"] = SERVER_TIMESTAMP

        newly_approved = [r for r in results if r.approved and not r.short_circuit]
        entries: List[Dict[str, Any]] = []
        if newly_approved:
            updates.update(shipment_cleanup_fields())
            if can_transition(TransitionSource.LABEL_VOID, order.get("status"), OrderStatus.CANCELLED):
                updates["status"] = OrderStatus.CANCELLED
                entries.append(ActivityLogWriter.status_changed(OrderStatus.CANCELLED, via="label_void"))
            entries.append(
                ActivityLogWriter.entry(
                    "label",
                    f"Voided {len(newly_approved)} shipping label(s).",
                    metadata={"labelIds": [r.label_id for r in newly_approved], "reason": reason},
                )
            )

        updated: Optional[Order] = order
        if changed:
            updated = await self.store.merge_write(
                order_id, updates, log_entries=entries, auto_log_status=False, now=now
            )
        return VoidOutcome(results=results, updates=updates, changed=changed, order=updated)

    async def cancel_order(
        self,
        order_id: str,
        *,
        reason: Optional[str] = None,
        initiated_by: Optional[str] = None,
        notify_customer: bool = True,
        void_labels: bool = True,
        auto: bool = False,
        now: Optional[datetime] = None,
    ) -> CancelOutcome:
        now = now or utcnow()
        order = await self.store.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        current = coerce_status(order.get("status"))
        if current is OrderStatus.CANCELLED:
            return CancelOutcome(order=order, already_cancelled=True)

        if not is_email_label_order(order) and not (
            is_kit_order(order) and current is OrderStatus.KIT_DELIVERED
        ):
            raise CancellationNotAllowed(
                "Order cancellation is only available for emailed labels or kit-delivered orders.",
                context={"order_id": order_id, "status": order.get("status")},
            )
        if not can_transition(TransitionSource.CANCELLATION, current, OrderStatus.CANCELLED):
            raise CancellationNotAllowed(
                f"Order in status {order.get('status')} can no longer be cancelled.",
                context={"order_id": order_id, "status": order.get("status")},
            )

        reason = (reason or "").strip() or DEFAULT_CANCEL_REASON
        void_results: List[VoidResult] = []
        selections = pending_selections(order)
        if void_labels and selections:
            try:
                outcome = await self.void_labels(
                    order, selections, reason=AUTOMATIC if auto else MANUAL, now=now
                )
                void_results = outcome.results
                order = outcome.order or order
            except EngineError:
                logger.exception("order %s: voiding labels during cancellation failed", order_id)

        voided_ids = [r.label_id for r in void_results if r.approved]
        message = (
            "Order automatically cancelled after extended inactivity."
            if auto
            else f"Order cancelled{f' by {initiated_by}' if initiated_by else ''}."
        )
        fields: Dict[str, Any] = {
            "cancelledAt": SERVER_TIMESTAMP,
            "cancelReason": reason,
            "cancelRequestedBy": initiated_by,
            "autoCancelled": auto,
        }
        # the void step may already have moved the order to cancelled
        already_logged = coerce_status(order.get("status")) is OrderStatus.CANCELLED
        if not already_logged:
            fields["status"] = OrderStatus.CANCELLED
        if void_results:
            fields["cancelVoidResults"] = [r.to_dict() for r in void_results]

        updated = await self.store.merge_write(
            order_id,
            fields,
            log_entries=[
                ActivityLogWriter.entry(
                    "cancellation",
                    message,
                    metadata={"reason": reason, "auto": auto, "labelsVoided": voided_ids},
                )
            ],
            auto_log_status=not already_logged,
            now=now,
        )
        logger.info(
            "order %s cancelled reason=%s auto=%s labelsVoided=%d", order_id, reason, auto, len(voided_ids)
        )

        if notify_customer:
            await self.dispatcher.dispatch(
                [notifications.order_cancelled(updated, reason=reason, auto=auto)], now=now
            )
            updated = await self.store.get(order_id) or updated
        return CancelOutcome(order=updated, void_results=void_results)
