"""Resolution scheduler wiring tests."""
from __future__ import annotations

import logging

from green_loom import scheduler as scheduler_module
from green_loom.service import DeploymentService
from green_loom.telemetry import MetricType, get_telemetry


class FakeScheduler:
    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.jobs = []
        self.started = False
        self.stopped = False
        FakeScheduler.instances.append(self)

    def add_job(self, func, trigger, **kwargs):
        self.jobs.append((func, trigger, kwargs))

    def start(self):
        self.started = True

    def shutdown(self, wait=True):
        self.stopped = True


def test_scheduler_registers_jobs(tmp_path, monkeypatch):
    FakeScheduler.instances = []
    monkeypatch.setattr(scheduler_module, "BackgroundScheduler", FakeScheduler)

    service = DeploymentService(tmp_path / "timeline.db")
    rs = scheduler_module.ResolutionScheduler(service)
    rs.start()

    assert FakeScheduler.instances, "scheduler was not constructed"
    fake = FakeScheduler.instances[0]
    assert fake.kwargs["timezone"] == "UTC"
    interval_jobs = [kwargs for _, trigger, kwargs in fake.jobs if trigger == "interval"]
    assert interval_jobs[0]["seconds"] == service.settings.scheduler_interval_seconds
    snapshot_jobs = [kwargs for _, trigger, kwargs in fake.jobs if trigger == "cron" and "hour" in kwargs]
    assert snapshot_jobs[0]["hour"] == service.settings.snapshot_hour
    assert fake.started is True

    rs.shutdown()
    assert fake.stopped is True


def test_interval_override(tmp_path, monkeypatch):
    FakeScheduler.instances = []
    monkeypatch.setattr(scheduler_module, "BackgroundScheduler", FakeScheduler)

    rs = scheduler_module.ResolutionScheduler(DeploymentService(tmp_path / "timeline.db"), 5)
    rs.start()

    interval_jobs = [kwargs for _, trigger, kwargs in FakeScheduler.instances[0].jobs if trigger == "interval"]
    assert interval_jobs[0]["seconds"] == 5


def test_job_failures_are_logged_not_raised(tmp_path, monkeypatch, caplog):
    monkeypatch.setattr(scheduler_module, "BackgroundScheduler", FakeScheduler)
    service = DeploymentService(tmp_path / "timeline.db")

    def explode(now=None):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(service, "complete_due", explode)
    monkeypatch.setattr(service, "record_daily_snapshot", explode)
    rs = scheduler_module.ResolutionScheduler(service)

    with caplog.at_level(logging.ERROR, logger="green_loom.scheduler"):
        rs._complete_due()
        rs._daily_snapshot()

    assert "Completing due deployments failed" in caplog.text
    assert "Recording daily snapshot failed" in caplog.text
    errors = [
        event
        for event in get_telemetry()._metrics_buffer
        if event.metric_type is MetricType.ERROR_RATE
    ]
    assert [event.tags["operation"] for event in errors] == ["complete_due", "daily_snapshot"]


def test_snapshot_job_records_state(tmp_path, monkeypatch):
    monkeypatch.setattr(scheduler_module, "BackgroundScheduler", FakeScheduler)
    service = DeploymentService(tmp_path / "timeline.db")
    rs = scheduler_module.ResolutionScheduler(service)

    rs._daily_snapshot()

    assert len(service.store.global_state().daily_snapshots) == 1
