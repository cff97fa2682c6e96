# buyback/jobs/label_void_sweep.py
"""
Hourly auto-void of unused prepaid labels.

Per label_generated order:
  - skip orders already handled by an earlier run
  - pick labels that are pending, at least AUTO_VOID_AGE_DAYS old, and not
    auto-attempted within AUTO_VOID_RETRY_HOURS
  - void them; on any approval cancel the order with
    reason=label_voided_no_response
One operations summary per run (never one mail per order).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from buyback.core.errors import CredentialsMissing, EngineError
from buyback.domain.statuses import OrderStatus, coerce_status
from buyback.jobs.context import EngineContext
from buyback.jobs.sweep import SweepReport, track_sweep
from buyback.services import notifications
from buyback.services.activity_log import ActivityLogWriter
from buyback.services.label_lifecycle import (
    AUTOMATIC,
    LabelSelection,
    auto_void_skip_reason,
    normalize_label_map,
)
from buyback.services.order_store import SERVER_TIMESTAMP
from buyback.utils.time import utcnow

logger = logging.getLogger("buyback.jobs.label_void")

JOB = "label_void"
CANCEL_REASON = "label_voided_no_response"


def due_selections(order, *, now: datetime, min_age: timedelta, retry_after: timedelta, max_attempts: int):
    selections: List[LabelSelection] = []
    reasons: List[str] = []
    for key, entry in normalize_label_map(order).items():
        reason = auto_void_skip_reason(
            order, entry, now=now, min_age=min_age, retry_after=retry_after, max_attempts=max_attempts
        )
        if reason is None:
            selections.append(LabelSelection(key=key, id=str(entry["id"])))
        else:
            reasons.append(reason)
    return selections, reasons


async def run_once(ctx: EngineContext, *, now: Optional[datetime] = None) -> SweepReport:
    report = SweepReport(job=JOB)
    async with track_sweep(report):
        if not ctx.carrier.configured:
            logger.warning("automatic label void sweep skipped: label API key not configured")
            report.aborted = "credentials_missing"
            return report

        now = now or utcnow()
        settings = ctx.settings
        min_age = timedelta(days=settings.AUTO_VOID_AGE_DAYS)
        retry_after = timedelta(hours=settings.AUTO_VOID_RETRY_HOURS)

        orders = await ctx.store.query(
            statuses=[OrderStatus.LABEL_GENERATED.value], limit=settings.AUTO_VOID_QUERY_LIMIT
        )
        report.scanned = len(orders)

        for order in orders:
            order_id = str(order["id"])
            if coerce_status(order.get("status")) is not OrderStatus.LABEL_GENERATED:
                report.mark_skipped(order_id, "status_changed")
                continue
            if order.get("returnAutoVoidedAt") or order.get("autoLabelVoidProcessedAt"):
                report.mark_skipped(order_id, "already_processed")
                continue

            try:
                selections, reasons = due_selections(
                    order,
                    now=now,
                    min_age=min_age,
                    retry_after=retry_after,
                    max_attempts=settings.AUTO_VOID_MAX_ATTEMPTS,
                )
                if not selections:
                    report.mark_skipped(order_id, reasons[0] if reasons else "no_labels")
                    continue

                outcome = await ctx.labels.void_labels(order, selections, reason=AUTOMATIC, now=now)
                approved = [r.label_id for r in outcome.results if r.approved and not r.short_circuit]
                if not approved:
                    errors = [r.message for r in outcome.results if r.error]
                    if errors:
                        report.mark_failed(order_id, errors[0])
                    else:
                        report.mark_skipped(order_id, "void_denied")
                    continue

                await ctx.store.merge_write(
                    order_id,
                    {
                        "status": OrderStatus.CANCELLED,
                        "autoCancelled": True,
                        "cancelReason": CANCEL_REASON,
                        "cancelledAt": SERVER_TIMESTAMP,
                        "returnAutoVoidedAt": SERVER_TIMESTAMP,
                        "autoLabelVoidProcessedAt": SERVER_TIMESTAMP,
                    },
                    log_entries=[
                        ActivityLogWriter.entry(
                            "cancellation",
                            f"Order cancelled automatically after label remained unused for "
                            f"{settings.AUTO_VOID_AGE_DAYS} days.",
                            metadata={"labelsVoided": approved},
                        )
                    ],
                    auto_log_status=False,
                    now=now,
                )
                report.mark_processed(order_id, labelIds=approved)
            except CredentialsMissing:
                logger.warning("automatic label void sweep stopped: credentials missing")
                report.aborted = "credentials_missing"
                break
            except EngineError as e:
                logger.exception("automatic label void failed for order %s", order_id)
                report.mark_failed(order_id, e.message)
            except Exception as e:
                logger.exception("automatic label void crashed for order %s", order_id)
                await ctx.store.rollback()
                report.mark_failed(order_id, str(e) or type(e).__name__)

        if report.processed or report.failed:
            count = len(report.processed)
            await ctx.dispatcher.dispatch(
                [
                    notifications.sweep_summary(
                        settings.OPS_NOTIFICATION_EMAIL,
                        title=f"Automatic {settings.AUTO_VOID_AGE_DAYS}-day label void sweep completed",
                        subject=f"Auto-void summary: {count} order{'' if count == 1 else 's'} updated",
                        cancelled=report.processed,
                        skipped=report.skipped,
                        failed=report.failed,
                    )
                ],
                now=now,
            )
        return report
