# buyback/jobs/dormant_cancel_sweep.py
"""
Daily cancel of orders with no status change for AUTO_CANCEL_DAYS.

Off unless AUTO_CANCELLATION_ENABLED is set.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from buyback.core.errors import EngineError
from buyback.domain.statuses import OrderStatus
from buyback.jobs.context import EngineContext
from buyback.jobs.sweep import SweepReport, track_sweep
from buyback.utils.time import utcnow

logger = logging.getLogger("buyback.jobs.dormant_cancel")

JOB = "dormant_cancel"

MONITORED_STATUSES = (
    OrderStatus.ORDER_PENDING.value,
    OrderStatus.NEEDS_PRINTING.value,
    OrderStatus.KIT_SENT.value,
    OrderStatus.KIT_ON_THE_WAY_TO_CUSTOMER.value,
    OrderStatus.KIT_ON_THE_WAY_TO_US.value,
    OrderStatus.LABEL_GENERATED.value,
    OrderStatus.EMAILED.value,
    OrderStatus.PHONE_ON_THE_WAY.value,
)


def cancel_reason(days: int) -> str:
    return f"no_activity_{days}_days"


async def run_once(ctx: EngineContext, *, now: Optional[datetime] = None) -> SweepReport:
    report = SweepReport(job=JOB)
    async with track_sweep(report):
        settings = ctx.settings
        if not settings.AUTO_CANCELLATION_ENABLED:
            logger.info("auto cancellation sweep skipped: feature disabled")
            report.aborted = "disabled"
            return report

        now = now or utcnow()
        cutoff = now - timedelta(days=settings.AUTO_CANCEL_DAYS)
        orders = await ctx.store.query(
            statuses=MONITORED_STATUSES,
            limit=settings.AUTO_CANCEL_QUERY_LIMIT,
            status_updated_before=cutoff,
        )
        report.scanned = len(orders)

        for order in orders:
            order_id = str(order["id"])
            try:
                await ctx.labels.cancel_order(
                    order_id, reason=cancel_reason(settings.AUTO_CANCEL_DAYS), auto=True, now=now
                )
            except EngineError as e:
                logger.warning("failed to auto-cancel dormant order %s: %s", order_id, e.message)
                report.mark_failed(order_id, e.message)
                continue
            except Exception as e:
                logger.exception("dormant order %s auto-cancel crashed", order_id)
                await ctx.store.rollback()
                report.mark_failed(order_id, str(e) or type(e).__name__)
                continue
            report.mark_processed(order_id)
        return report
