# buyback/jobs/sweep.py
"""
Shared sweep bookkeeping.

- SweepReport: per-run tallies (processed / skipped / failed entries)
- track_sweep: metrics around one run (duration, in-flight gauge, outcome)
- InFlightGuard: refuses overlapping runs of the same sweep in-process
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from buyback.obs.metrics import sweep_duration, sweep_in_flight, sweep_orders_total, sweep_runs_total

logger = logging.getLogger("buyback.jobs")


@dataclass
class SweepReport:
    job: str
    scanned: int = 0
    processed: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    aborted: Optional[str] = None

    def mark_processed(self, order_id: str, **extra: Any) -> None:
        self.processed.append({"orderId": order_id, **extra})
        sweep_orders_total.labels(self.job, "processed").inc()

    def mark_skipped(self, order_id: str, reason: str, **extra: Any) -> None:
        self.skipped.append({"orderId": order_id, "reason": reason, **extra})
        sweep_orders_total.labels(self.job, "skipped").inc()

    def mark_failed(self, order_id: str, reason: str) -> None:
        self.failed.append({"orderId": order_id, "reason": reason})
        sweep_orders_total.labels(self.job, "failed").inc()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "scanned": self.scanned,
            "processed": len(self.processed),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "aborted": self.aborted,
        }


@asynccontextmanager
async def track_sweep(report: SweepReport) -> AsyncIterator[SweepReport]:
    start = time.perf_counter()
    sweep_in_flight.labels(report.job).inc()
    try:
        yield report
    except Exception:
        sweep_runs_total.labels(report.job, "error").inc()
        raise
    else:
        sweep_runs_total.labels(report.job, "aborted" if report.aborted else "ok").inc()
    finally:
        sweep_in_flight.labels(report.job).dec()
        sweep_duration.labels(report.job).observe(time.perf_counter() - start)
        logger.info("[%s] %s", report.job, report.to_dict())


class InFlightGuard:
    """In-process flag; a second run started while the first is active is skipped."""

    def __init__(self) -> None:
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    def acquire(self) -> bool:
        if self._busy:
            return False
        self._busy = True
        return True

    def release(self) -> None:
        self._busy = False
