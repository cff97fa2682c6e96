# buyback/jobs/label_reminder_sweep.py
"""
Daily "you still have a prepaid label" reminders.

Tier 1 after LABEL_REMINDER_FIRST_DAYS, tier 2 after
LABEL_REMINDER_SECOND_DAYS; each tier is sent at most once and never within
LABEL_REMINDER_MIN_GAP_HOURS of the previous customer email.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from buyback.core.config import AppSettings
from buyback.domain.resolvers import REMINDER_START_ACCESSORS, first_timestamp, last_customer_email_at
from buyback.domain.statuses import OrderStatus
from buyback.jobs.context import EngineContext
from buyback.jobs.sweep import SweepReport, track_sweep
from buyback.services import notifications
from buyback.utils.time import DAY, utcnow

logger = logging.getLogger("buyback.jobs.label_reminder")

JOB = "label_reminder"
REMINDER_STATUSES = (OrderStatus.LABEL_GENERATED.value, OrderStatus.EMAILED.value)
QUERY_LIMIT = 500


def reminder_tier(order: Mapping[str, Any], *, now: datetime, settings: AppSettings) -> Optional[int]:
    started = first_timestamp(order, REMINDER_START_ACCESSORS)
    if started is None:
        return None

    last_email = last_customer_email_at(order)
    if last_email is not None and now - last_email < timedelta(hours=settings.LABEL_REMINDER_MIN_GAP_HOURS):
        return None

    age = now - started
    if age >= timedelta(days=settings.LABEL_REMINDER_SECOND_DAYS) and not order.get("labelReminderSecondSentAt"):
        return 2 if order.get("labelReminderFirstSentAt") else 1
    if age >= timedelta(days=settings.LABEL_REMINDER_FIRST_DAYS) and not order.get("labelReminderFirstSentAt"):
        return 1
    return None


async def run_once(ctx: EngineContext, *, now: Optional[datetime] = None) -> SweepReport:
    report = SweepReport(job=JOB)
    async with track_sweep(report):
        now = now or utcnow()
        orders = await ctx.store.query(statuses=REMINDER_STATUSES, limit=QUERY_LIMIT)
        report.scanned = len(orders)

        for order in orders:
            order_id = str(order["id"])
            try:
                tier = reminder_tier(order, now=now, settings=ctx.settings)
                if tier is None:
                    continue

                started = first_timestamp(order, REMINDER_START_ACCESSORS)
                age_days = int((now - started) / DAY) if started else 0
                message = notifications.label_reminder(order, tier=tier, age_days=age_days)
                if message is None:
                    report.mark_skipped(order_id, "no_customer_email")
                    continue

                sent = await ctx.dispatcher.dispatch([message], now=now)
            except Exception as e:
                logger.exception("label reminder failed for order %s", order_id)
                await ctx.store.rollback()
                report.mark_failed(order_id, str(e) or type(e).__name__)
                continue

            if sent:
                report.mark_processed(order_id, tier=tier)
            else:
                report.mark_failed(order_id, "send_failed")

        logger.info("automatic label reminder sweep sent %d reminders", len(report.processed))
        return report
