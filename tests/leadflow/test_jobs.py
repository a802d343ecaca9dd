from __future__ import annotations

import logging

from fastapi.testclient import TestClient

from leadflow.main import create_app
from leadflow.services.jobs import JobScheduler


def test_engine_schedules_every_sweep(engine, settings) -> None:
    assert sorted(engine.jobs.job_ids()) == [
        "launch_campaigns",
        "reassign_stale_leads",
        "reconcile_webhooks",
        "retry_failed_sends",
    ]
    for job in engine.jobs.scheduler.get_jobs():
        assert job.max_instances == 1
        assert job.coalesce is True
        assert job.trigger.interval.total_seconds() == settings.job_interval_seconds


def test_scheduler_starts_and_stops(engine) -> None:
    engine.start_jobs()
    try:
        assert engine.jobs.running
        engine.start_jobs()
        assert engine.jobs.running
    finally:
        engine.stop_jobs()
    assert not engine.jobs.running
    engine.stop_jobs()


def test_failing_job_is_logged_not_raised(caplog) -> None:
    def explode() -> None:
        raise RuntimeError("provider outage")

    jobs = JobScheduler(60)
    jobs.add("explode", explode)
    jobs.add("answer", lambda: 42)

    with caplog.at_level(logging.ERROR, logger="leadflow.jobs"):
        assert jobs.run_once("explode") is None
    assert "job_failed name=explode" in caplog.text
    assert jobs.run_once("answer") == 42


def test_lifespan_runs_scheduler_when_enabled(monkeypatch) -> None:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("BACKGROUND_JOBS_ENABLED", "true")
    monkeypatch.setenv("JOB_INTERVAL_SECONDS", "3600")
    app = create_app()

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        assert app.state.engine.jobs.running
    assert not app.state.engine.jobs.running
