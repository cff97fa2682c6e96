# buyback/jobs/reoffer_expiry_sweep.py
"""Daily auto-accept of revised offers left unanswered past their deadline."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from buyback.core.errors import EngineError
from buyback.domain.statuses import OrderStatus
from buyback.jobs.context import EngineContext
from buyback.jobs.sweep import SweepReport, track_sweep
from buyback.utils.time import utcnow

logger = logging.getLogger("buyback.jobs.reoffer_expiry")

JOB = "reoffer_expiry"
QUERY_LIMIT = 500


async def run_once(ctx: EngineContext, *, now: Optional[datetime] = None) -> SweepReport:
    report = SweepReport(job=JOB)
    async with track_sweep(report):
        now = now or utcnow()
        orders = await ctx.store.query(statuses=[OrderStatus.RE_OFFERED_PENDING.value], limit=QUERY_LIMIT)
        report.scanned = len(orders)

        for order in orders:
            order_id = str(order["id"])
            try:
                result = await ctx.reoffers.expire_reoffers(order, now=now)
            except EngineError as e:
                logger.exception("re-offer auto-accept failed for order %s", order_id)
                report.mark_failed(order_id, e.message)
                continue
            except Exception as e:
                logger.exception("re-offer auto-accept crashed for order %s", order_id)
                await ctx.store.rollback()
                report.mark_failed(order_id, str(e) or type(e).__name__)
                continue

            if result.expired_keys:
                report.mark_processed(
                    order_id,
                    deviceKeys=result.expired_keys,
                    status=result.status.value if result.status else None,
                )

        logger.info("auto-accepted device offers on %d pending orders", len(report.processed))
        return report
