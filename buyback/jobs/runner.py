# buyback/jobs/runner.py
"""
Command-line entry for the sweeps.

    buyback-jobs label-void
    python -m buyback.jobs.runner inbound-tracking --now 2026-01-31T00:00:00Z
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, Optional

from buyback.core.config import get_settings
from buyback.core.logging import setup_logging
from buyback.jobs import (
    bulk_void,
    dormant_cancel_sweep,
    inbound_tracking_sweep,
    label_reminder_sweep,
    label_void_sweep,
    reoffer_expiry_sweep,
    unresolved_finalize_sweep,
)
from buyback.jobs.context import EngineContext, open_context
from buyback.utils.time import to_datetime

logger = logging.getLogger("buyback.jobs.runner")

Runner = Callable[..., Awaitable[object]]

SWEEPS: Dict[str, Runner] = {
    "inbound-tracking": inbound_tracking_sweep.run_once,
    "label-void": label_void_sweep.run_once,
    "label-reminder": label_reminder_sweep.run_once,
    "reoffer-expiry": reoffer_expiry_sweep.run_once,
    "unresolved-finalize": unresolved_finalize_sweep.run_once,
    "dormant-cancel": dormant_cancel_sweep.run_once,
}


async def run_named(name: str, *, now=None, ctx: Optional[EngineContext] = None) -> dict:
    async def _go(c: EngineContext) -> dict:
        if name == "bulk-void":
            return await bulk_void.run_admin_bulk_void(c, now=now)
        report = await SWEEPS[name](c, now=now)
        return report.to_dict()

    if ctx is not None:
        return await _go(ctx)
    async with open_context() as c:
        return await _go(c)


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Buyback lifecycle sweeps")
    ap.add_argument("job", choices=sorted([*SWEEPS, "bulk-void"]))
    ap.add_argument("--now", help="reference time (ISO8601); default current UTC time")
    args = ap.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)

    now = to_datetime(args.now) if args.now else None
    if args.now and now is None:
        ap.error(f"invalid --now value: {args.now!r}")

    result = asyncio.run(run_named(args.job, now=now))
    print(json.dumps(result, ensure_ascii=False, default=str))
    return 0


def run_cli() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    run_cli()
