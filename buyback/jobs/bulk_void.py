# buyback/jobs/bulk_void.py
"""
Admin "void aged labels" action.

Same idea as the hourly auto-void sweep, but operator-triggered with its
own age threshold (default 27 days) and a hard cap on orders per call.
Returns a summary payload for the HTTP caller and mails one summary to
operations.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from buyback.core.errors import CredentialsMissing, EngineError
from buyback.domain.resolvers import ORDER_AGE_ANCHOR_ACCESSORS, first_timestamp
from buyback.domain.statuses import OrderStatus, coerce_status
from buyback.jobs.context import EngineContext
from buyback.jobs.sweep import SweepReport, track_sweep
from buyback.services import notifications
from buyback.services.activity_log import ActivityLogWriter
from buyback.services.label_lifecycle import (
    AUTOMATIC,
    LABEL_VOIDED,
    label_status,
    normalize_label_map,
    pending_selections,
)
from buyback.services.order_store import SERVER_TIMESTAMP
from buyback.utils.time import DAY, to_datetime, utcnow

logger = logging.getLogger("buyback.jobs.bulk_void")

JOB = "admin_bulk_void"
ENTRY_PREVIEW_LIMIT = 25


def order_age_days(order: Mapping[str, Any], now: datetime) -> Optional[float]:
    anchor = first_timestamp(order, ORDER_AGE_ANCHOR_ACCESSORS)
    if anchor is None:
        return None
    return round((now - anchor).total_seconds() / DAY.total_seconds(), 1)


def voided_label_ids(order: Mapping[str, Any]) -> List[str]:
    return [
        str(entry["id"])
        for entry in normalize_label_map(order).values()
        if entry.get("id") and (label_status(entry) == LABEL_VOIDED or entry.get("voidedAt"))
    ]


def has_any_voided_label(order: Mapping[str, Any]) -> bool:
    if voided_label_ids(order):
        return True
    return str(order.get("labelVoidStatus") or "").lower() == LABEL_VOIDED or bool(
        to_datetime(order.get("labelVoidedAt"))
    )


async def run_admin_bulk_void(
    ctx: EngineContext,
    *,
    min_days: Optional[float] = None,
    max_orders: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    settings = ctx.settings
    if not ctx.carrier.configured:
        raise CredentialsMissing("Label API key not configured.")

    now = now or utcnow()
    min_days = settings.ADMIN_BULK_VOID_MIN_DAYS if min_days is None or min_days < 0 else min_days
    max_orders = max(1, int(max_orders or settings.ADMIN_BULK_VOID_MAX_PER_RUN))

    report = SweepReport(job=JOB)
    async with track_sweep(report):
        candidates = await ctx.store.query(
            statuses=[OrderStatus.LABEL_GENERATED.value], limit=settings.ADMIN_BULK_VOID_QUERY_LIMIT
        )
        total = len(candidates)
        batch = candidates[:max_orders]
        report.scanned = len(batch)

        for order in batch:
            order_id = str(order["id"])
            try:
                age_days = order_age_days(order, now)
                if age_days is None or age_days < min_days:
                    report.mark_skipped(order_id, "below_age_threshold", ageDays=age_days)
                    continue
                if coerce_status(order.get("status")) is OrderStatus.CANCELLED:
                    report.mark_skipped(order_id, "already_cancelled")
                    continue

                selections = pending_selections(order)
                approved: List[str] = []
                if selections:
                    outcome = await ctx.labels.void_labels(order, selections, reason=AUTOMATIC, now=now)
                    approved = [r.label_id for r in outcome.results if r.approved and r.label_id]

                if not approved and not has_any_voided_label(order):
                    report.mark_skipped(
                        order_id,
                        "no_labels_approved_for_void" if selections else "no_labels_to_void_or_cancel",
                    )
                    continue

                label_ids = approved or voided_label_ids(order)
                await ctx.store.merge_write(
                    order_id,
                    {
                        "status": OrderStatus.CANCELLED,
                        "autoCancelled": True,
                        "cancelReason": f"admin_bulk_void_{int(min_days)}_days",
                        "cancelledAt": SERVER_TIMESTAMP,
                        "adminBulkVoidProcessedAt": SERVER_TIMESTAMP,
                        "autoLabelVoidProcessedAt": SERVER_TIMESTAMP,
                    },
                    log_entries=[
                        ActivityLogWriter.entry(
                            "cancellation",
                            f"Order cancelled by admin bulk aged-label void action ({min_days:g}+ days).",
                            metadata={"labelsVoided": label_ids, "ageDays": age_days},
                        )
                    ],
                    # an approved void above already logged the status change
                    auto_log_status=not approved,
                    now=now,
                )
                report.mark_processed(order_id, ageDays=age_days, labelIds=label_ids)
            except CredentialsMissing:
                raise
            except EngineError as e:
                logger.exception("bulk void failed for order %s", order_id)
                report.mark_failed(order_id, e.message)
            except Exception as e:
                logger.exception("bulk void crashed for order %s", order_id)
                await ctx.store.rollback()
                report.mark_failed(order_id, str(e) or type(e).__name__)

        await ctx.dispatcher.dispatch(
            [
                notifications.sweep_summary(
                    settings.OPS_NOTIFICATION_EMAIL,
                    title=f"Admin {min_days:g}+ day bulk void completed",
                    subject=f"Admin bulk void summary ({min_days:g}+ days): {len(report.processed)} cancelled",
                    cancelled=report.processed,
                    skipped=report.skipped,
                    failed=report.failed,
                )
            ],
            now=now,
        )

    return {
        "mode": "aged",
        "minDays": min_days,
        "maxOrders": max_orders,
        "totalCandidates": total,
        "hasMore": total > len(batch),
        "scanned": len(batch),
        "cancelled": len(report.processed),
        "skipped": len(report.skipped),
        "failed": len(report.failed),
        "cancelledEntries": report.processed,
        "skippedEntries": report.skipped[:ENTRY_PREVIEW_LIMIT],
        "failedEntries": report.failed[:ENTRY_PREVIEW_LIMIT],
    }
