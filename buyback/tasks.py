# buyback/tasks.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from buyback.jobs.runner import SWEEPS, run_named
from buyback.utils.time import to_datetime
from buyback.worker import celery

logger = logging.getLogger("buyback.tasks")


@celery.task(name="buyback.run_sweep")
def run_sweep(name: str, now: Optional[str] = None) -> Dict[str, Any]:
    """
    One sweep run inside a Celery worker.

    - `name` is a runner job name (inbound-tracking, label-void, ...)
    - `now` (ISO8601) pins the reference time, mostly for replays
    """
    if name not in SWEEPS:
        raise ValueError(f"unknown sweep: {name}")
    result = asyncio.run(run_named(name, now=to_datetime(now) if now else None))
    logger.info("celery sweep %s: %s", name, result)
    return result
