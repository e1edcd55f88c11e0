from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from payment_alerts.runs import (
    STATUS_JOB_NAME,
    InMemoryJobRunRepository,
    JobRunRepository,
    RunCounts,
    SqlAlchemyJobRunRepository,
    evaluate_job_health,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def runs(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[JobRunRepository]:
    if request.param == "inmemory":
        yield InMemoryJobRunRepository()
    else:
        yield SqlAlchemyJobRunRepository(f"sqlite:///{tmp_path / 'runs.db'}")


def test_run_lifecycle_is_recorded(runs: JobRunRepository) -> None:
    started = datetime(2025, 5, 15, 7, 30, tzinfo=timezone.utc)
    run_id = runs.start_run(job_name=STATUS_JOB_NAME, dry_run=False, started_at=started)

    running = runs.get_run(run_id)
    assert running is not None
    assert running.status == "running"
    assert running.finished_at is None

    runs.finish_run(
        run_id,
        status="success",
        counts=RunCounts(installments_scanned=3, transitioned=1, in_app_created=1, sent=2, skipped=1),
        errors=[{"stage": "render", "message": "bad template", "agency_id": "agency-a", "installment_id": "inst-2"}],
        finished_at=started + timedelta(seconds=2),
        duration_ms=2000,
    )

    finished = runs.get_run(run_id)
    assert finished is not None
    assert finished.status == "success"
    assert finished.counts.transitioned == 1
    assert finished.counts.sent == 2
    assert finished.errors[0]["stage"] == "render"
    assert finished.duration_ms == 2000
    assert finished.started_at == started


def test_latest_run_is_most_recently_started(runs: JobRunRepository) -> None:
    base = datetime(2025, 5, 15, 7, 0, tzinfo=timezone.utc)
    runs.start_run(job_name=STATUS_JOB_NAME, dry_run=False, started_at=base)
    newest = runs.start_run(job_name=STATUS_JOB_NAME, dry_run=True, started_at=base + timedelta(hours=1))
    runs.start_run(job_name="other-job", dry_run=False, started_at=base + timedelta(hours=2))

    latest = runs.get_latest_run()
    assert latest is not None
    assert latest.run_id == newest
    assert latest.dry_run is True


def test_latest_run_is_none_before_first_pass(runs: JobRunRepository) -> None:
    assert runs.get_latest_run() is None


def test_job_health_grades_time_since_last_start(runs: JobRunRepository) -> None:
    started = datetime(2025, 5, 14, 7, 0, tzinfo=timezone.utc)
    runs.start_run(job_name=STATUS_JOB_NAME, dry_run=False, started_at=started)
    latest = runs.get_latest_run()

    healthy = evaluate_job_health(latest, now=started + timedelta(hours=24))
    warning = evaluate_job_health(latest, now=started + timedelta(hours=24, minutes=30))
    critical = evaluate_job_health(latest, now=started + timedelta(hours=26))

    assert (healthy.status, healthy.ok) == ("healthy", True)
    assert healthy.hours_since_last_run == 24.0
    assert healthy.last_run_at == started
    assert (warning.status, warning.ok) == ("warning", True)
    assert warning.hours_since_last_run == 24.5
    assert (critical.status, critical.ok) == ("critical", False)
    assert critical.message == "Job has not run in 26 hours - missed execution detected"
    assert critical.last_run_id == latest.run_id


def test_job_health_is_critical_when_never_run() -> None:
    report = evaluate_job_health(None, now=datetime(2025, 5, 15, tzinfo=timezone.utc))

    assert report.ok is False
    assert report.status == "critical"
    assert report.last_run_at is None
    assert report.hours_since_last_run is None
    assert report.job_name == STATUS_JOB_NAME


def test_job_health_thresholds_are_configurable() -> None:
    started = datetime(2025, 5, 15, 0, 0, tzinfo=timezone.utc)
    runs = InMemoryJobRunRepository()
    runs.start_run(job_name=STATUS_JOB_NAME, dry_run=False, started_at=started)

    report = evaluate_job_health(
        runs.get_latest_run(),
        now=started + timedelta(hours=2),
        warning_hours=1,
        alert_hours=1.5,
    )

    assert report.status == "critical"
