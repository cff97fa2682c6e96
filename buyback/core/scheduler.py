# buyback/core/scheduler.py
from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from buyback.core.config import get_settings
from buyback.jobs.runner import run_named

logger = logging.getLogger("buyback.scheduler")

_scheduler: Optional[AsyncIOScheduler] = None

# job name → APScheduler trigger kwargs
SCHEDULE = {
    "inbound-tracking": {"trigger": "interval", "minutes": 60},
    "label-void": {"trigger": "interval", "minutes": 60},
    "unresolved-finalize": {"trigger": "interval", "minutes": 60},
    "label-reminder": {"trigger": "cron", "hour": 9, "minute": 0},
    "reoffer-expiry": {"trigger": "cron", "hour": 0, "minute": 15},
    "dormant-cancel": {"trigger": "cron", "hour": 1, "minute": 0},
}


async def _run(name: str) -> None:
    try:
        result = await run_named(name)
        logger.info("scheduled %s finished: %s", name, result)
    except Exception:
        # one failed run must not take the scheduler down
        logger.exception("scheduled %s failed", name)


def init_scheduler() -> Optional[AsyncIOScheduler]:
    global _scheduler
    settings = get_settings()
    if not settings.ENABLE_SCHEDULER or _scheduler is not None:
        return _scheduler

    _scheduler = AsyncIOScheduler(timezone=settings.SCHEDULER_TIMEZONE)
    for name, trigger in SCHEDULE.items():
        _scheduler.add_job(
            _run,
            args=[name],
            id=name,
            max_instances=1,
            coalesce=True,
            **trigger,
        )
    _scheduler.start()
    logger.info("scheduler started with jobs: %s", ", ".join(SCHEDULE))
    return _scheduler


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
