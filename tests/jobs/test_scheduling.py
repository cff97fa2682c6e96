# tests/jobs/test_scheduling.py
import inspect
from types import SimpleNamespace

import pytest

from buyback.core import scheduler
from buyback.jobs import runner
from buyback.jobs.runner import SWEEPS, main
from buyback.tasks import run_sweep
from buyback.worker import celery


def test_every_sweep_is_scheduled_on_both_backends():
    assert set(scheduler.SCHEDULE) == set(SWEEPS)
    beat_jobs = {entry["args"][0] for entry in celery.conf.beat_schedule.values()}
    assert beat_jobs == set(SWEEPS)
    assert all(e["task"] == "buyback.run_sweep" for e in celery.conf.beat_schedule.values())


def test_scheduler_stays_off_when_disabled(monkeypatch):
    monkeypatch.setattr(scheduler, "get_settings", lambda: SimpleNamespace(ENABLE_SCHEDULER=False))
    assert scheduler.init_scheduler() is None


def test_celery_task_rejects_unknown_sweep():
    with pytest.raises(ValueError, match="unknown sweep"):
        run_sweep("nope")


def test_cli_rejects_unknown_job():
    with pytest.raises(SystemExit):
        main(["nope"])


def test_cli_is_the_single_entry_for_every_sweep(monkeypatch, capsys):
    calls = []

    async def fake_run_named(name, *, now=None, ctx=None):
        calls.append((name, now))
        return {"job": name}

    monkeypatch.setattr(runner, "run_named", fake_run_named)
    monkeypatch.setattr(runner, "setup_logging", lambda *a, **kw: None)
    assert main(["label-void", "--now", "2026-03-01T12:00:00Z"]) == 0

    assert calls[0][0] == "label-void"
    assert calls[0][1].isoformat().startswith("2026-03-01T12:00:00")
    assert '"job": "label-void"' in capsys.readouterr().out
    for fn in SWEEPS.values():
        assert not hasattr(inspect.getmodule(fn), "run_cli")
