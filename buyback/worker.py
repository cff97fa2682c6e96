# buyback/worker.py
# Celery worker + beat schedule for the lifecycle sweeps (eager in tests)
from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_postrun, task_prerun

from buyback.obs.metrics import celery_active_tasks

BROKER_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
RESULT_URL = os.getenv("CELERY_RESULT_BACKEND", os.getenv("RESULT_URL", "redis://localhost:6379/1"))

celery = Celery("buyback", broker=BROKER_URL, backend=RESULT_URL, include=["buyback.tasks"])

celery.conf.task_acks_late = True
celery.conf.worker_prefetch_multiplier = 1
celery.conf.broker_transport_options = {"visibility_timeout": 3600}
celery.conf.timezone = "UTC"

celery.conf.beat_schedule = {
    "inbound-tracking-hourly": {"task": "buyback.run_sweep", "schedule": 3600.0, "args": ("inbound-tracking",)},
    "label-void-hourly": {"task": "buyback.run_sweep", "schedule": 3600.0, "args": ("label-void",)},
    "unresolved-finalize-hourly": {
        "task": "buyback.run_sweep",
        "schedule": 3600.0,
        "args": ("unresolved-finalize",),
    },
    "label-reminder-daily": {
        "task": "buyback.run_sweep",
        "schedule": crontab(hour=9, minute=0),
        "args": ("label-reminder",),
    },
    "reoffer-expiry-daily": {
        "task": "buyback.run_sweep",
        "schedule": crontab(hour=0, minute=15),
        "args": ("reoffer-expiry",),
    },
    "dormant-cancel-daily": {
        "task": "buyback.run_sweep",
        "schedule": crontab(hour=1, minute=0),
        "args": ("dormant-cancel",),
    },
}

# tests / CI: run tasks in-process
_TESTING = bool(os.getenv("PYTEST_CURRENT_TEST")) or os.getenv("CELERY_ALWAYS_EAGER") == "1"
if _TESTING:
    celery.conf.task_always_eager = True
    celery.conf.task_eager_propagates = True
    celery.conf.task_store_eager_result = True


@task_prerun.connect
def _on_task_start(**_):
    celery_active_tasks.inc()


@task_postrun.connect
def _on_task_end(**_):
    celery_active_tasks.dec()
