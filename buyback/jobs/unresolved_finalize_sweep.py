# buyback/jobs/unresolved_finalize_sweep.py
"""
Hourly auto-finalize of orders stuck on an unanswered QC issue.

An "emailed" order with qcAwaitingResponse whose last customer email is
older than AUTO_REDUCED_PAYOUT_DAYS is completed at AUTO_REDUCED_PAYOUT_RATE
of its base payout (the re-offer price when there is one). Orders that
already went through an auto or manual requote are left alone.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from buyback.core.errors import EngineError
from buyback.domain.resolvers import last_customer_email_at
from buyback.domain.statuses import OrderStatus, TransitionSource, can_transition
from buyback.jobs.context import EngineContext
from buyback.jobs.sweep import SweepReport, track_sweep
from buyback.services import notifications
from buyback.services.activity_log import ActivityLogWriter
from buyback.services.order_store import SERVER_TIMESTAMP
from buyback.utils.time import iso, utcnow

logger = logging.getLogger("buyback.jobs.unresolved_finalize")

JOB = "unresolved_finalize"
INITIATED_BY = "system_auto_requote_unresolved"

PAYOUT_FIELDS = (
    "finalPayoutAmount",
    "finalPayout",
    "finalOfferAmount",
    "finalOffer",
    "payoutAmount",
    "payout",
    "estimatedQuote",
)


def _positive(value: Any) -> Optional[float]:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    return amount if amount > 0 else None


def base_payout(order: Mapping[str, Any]) -> Optional[float]:
    reoffer = order.get("reOffer") if isinstance(order.get("reOffer"), Mapping) else {}
    if reoffer.get("newPrice") is not None:
        return _positive(reoffer.get("newPrice"))
    for name in PAYOUT_FIELDS:
        amount = _positive(order.get(name))
        if amount is not None:
            return amount
    return None


def already_requoted(order: Mapping[str, Any]) -> bool:
    requote = order.get("autoRequote")
    if not isinstance(requote, Mapping):
        return False
    return requote.get("automatic") is True or requote.get("manual") is True


async def _finalize(
    ctx: EngineContext,
    order: Mapping[str, Any],
    *,
    now: datetime,
    window: timedelta,
    rate: float,
    report: SweepReport,
) -> Optional[float]:
    """Complete one stale QC order at the reduced payout; None when it is not due."""
    order_id = str(order["id"])
    settings = ctx.settings
    if not order.get("qcAwaitingResponse") or already_requoted(order):
        return None
    if not can_transition(TransitionSource.AUTO_FINALIZE, order.get("status"), OrderStatus.COMPLETED):
        return None

    last_email = last_customer_email_at(order)
    if last_email is None or now - last_email < window:
        return None

    base = base_payout(order)
    reduced = round(base * rate, 2) if base is not None else 0
    if reduced <= 0:
        report.mark_skipped(order_id, "no_base_payout")
        return None

    updated = await ctx.store.merge_write(
        order_id,
        {
            "status": OrderStatus.COMPLETED,
            "finalPayoutAmount": reduced,
            "finalOfferAmount": reduced,
            "finalPayout": reduced,
            "requoteAcceptedAt": SERVER_TIMESTAMP,
            "qcAwaitingResponse": False,
            "autoRequote": {
                "reducedFrom": round(base, 2),
                "reducedTo": reduced,
                "manual": False,
                "automatic": True,
                "initiatedBy": INITIATED_BY,
                "completedAt": SERVER_TIMESTAMP,
                "lastCustomerEmailAt": iso(last_email),
            },
        },
        log_entries=[
            ActivityLogWriter.status_changed(OrderStatus.COMPLETED, via="auto_finalize"),
            ActivityLogWriter.entry(
                "auto_requote",
                f"Order auto-finalized at ${reduced:.2f} after unresolved customer "
                f"communication for {settings.AUTO_REDUCED_PAYOUT_DAYS} days.",
                metadata={
                    "previousStatus": order.get("status"),
                    "reducedFrom": round(base, 2),
                    "reducedTo": reduced,
                    "reductionPercent": round((1 - rate) * 100),
                    "automatic": True,
                },
            ),
        ],
        auto_log_status=False,
        now=now,
    )
    await ctx.dispatcher.dispatch([notifications.auto_requote_finalized(updated, amount=reduced)], now=now)
    return reduced


async def run_once(ctx: EngineContext, *, now: Optional[datetime] = None) -> SweepReport:
    report = SweepReport(job=JOB)
    async with track_sweep(report):
        now = now or utcnow()
        settings = ctx.settings
        window = timedelta(days=settings.AUTO_REDUCED_PAYOUT_DAYS)
        rate = settings.AUTO_REDUCED_PAYOUT_RATE

        orders = await ctx.store.query(
            statuses=[OrderStatus.EMAILED.value], limit=settings.AUTO_REDUCED_PAYOUT_QUERY_LIMIT
        )
        report.scanned = len(orders)

        for order in orders:
            order_id = str(order["id"])
            try:
                reduced = await _finalize(ctx, order, now=now, window=window, rate=rate, report=report)
            except EngineError as e:
                logger.exception("automatic reduced payout finalization failed for order %s", order_id)
                report.mark_failed(order_id, e.message)
                continue
            except Exception as e:
                logger.exception("automatic reduced payout finalization crashed for order %s", order_id)
                await ctx.store.rollback()
                report.mark_failed(order_id, str(e) or type(e).__name__)
                continue
            if reduced is not None:
                report.mark_processed(order_id, reducedTo=reduced)
        return report
