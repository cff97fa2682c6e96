# buyback/jobs/inbound_tracking_sweep.py
"""
Hourly inbound tracking refresh.

Scans label_generated / phone_on_the_way orders and runs the inbound
reconciler on each (non-forced, so the per-order cooldown still applies).
Overlapping runs inside one process are refused by a module-level
InFlightGuard; there is no cross-process lock.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from buyback.core.errors import CredentialsMissing, EngineError
from buyback.domain.statuses import OrderStatus
from buyback.jobs.context import EngineContext
from buyback.jobs.sweep import InFlightGuard, SweepReport, track_sweep
from buyback.services.tracking_reconciler import should_track_inbound
from buyback.utils.time import utcnow

logger = logging.getLogger("buyback.jobs.inbound_tracking")

JOB = "inbound_tracking"
SWEEP_STATUSES = (OrderStatus.LABEL_GENERATED.value, OrderStatus.PHONE_ON_THE_WAY.value)

GUARD = InFlightGuard()


async def run_once(
    ctx: EngineContext,
    *,
    now: Optional[datetime] = None,
    guard: InFlightGuard = GUARD,
) -> SweepReport:
    report = SweepReport(job=JOB)
    if not guard.acquire():
        logger.info("inbound tracking refresh already running; skipping overlap run")
        report.aborted = "in_flight"
        return report

    try:
        async with track_sweep(report):
            if not ctx.carrier.configured:
                logger.warning("inbound tracking sweep skipped: tracking API credentials not configured")
                report.aborted = "credentials_missing"
                return report

            now = now or utcnow()
            orders = await ctx.store.query(
                statuses=SWEEP_STATUSES, limit=ctx.settings.AUTO_TRACKING_REFRESH_QUERY_LIMIT
            )
            report.scanned = len(orders)
            for order in orders:
                order_id = str(order["id"])
                try:
                    if not should_track_inbound(order):
                        report.mark_skipped(order_id, "not_trackable")
                        continue
                    result = await ctx.reconciler.sync_inbound_tracking(
                        order, source="system_automatic", now=now
                    )
                except CredentialsMissing:
                    logger.warning("inbound tracking sweep stopped: credentials missing")
                    report.aborted = "credentials_missing"
                    break
                except EngineError as e:
                    logger.exception("automatic inbound tracking refresh failed for order %s", order_id)
                    report.mark_failed(order_id, e.message)
                    continue
                except Exception as e:
                    logger.exception("automatic inbound tracking refresh crashed for order %s", order_id)
                    await ctx.store.rollback()
                    report.mark_failed(order_id, str(e) or type(e).__name__)
                    continue

                if result.skipped:
                    report.mark_skipped(order_id, result.skipped)
                else:
                    report.mark_processed(
                        order_id, applied=result.applied, status=result.order.get("status")
                    )
            return report
    finally:
        guard.release()
