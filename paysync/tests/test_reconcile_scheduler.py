from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from paysync import reconcile_scheduler
from paysync.app.sync import ReconciliationError, ReconciliationReport

NOW = datetime(2024, 8, 1, 9, tzinfo=timezone.utc)


def _engine_with(job):
    return SimpleNamespace(reconciliation_job=job, config=SimpleNamespace(reconcile_enabled=False))


def test_run_reconciliation_job_updates_metrics(monkeypatch):
    reconcile_scheduler._reset_metrics_for_testing()
    report = ReconciliationReport(started_at=NOW, finished_at=NOW, duration_ms=12, created=2)

    class FakeJob:
        def reconcile(self, *, cancel_event=None):
            return report

    monkeypatch.setattr(reconcile_scheduler, "get_sync_engine", lambda: _engine_with(FakeJob()))

    result = reconcile_scheduler.run_reconciliation_job()

    assert result == report
    metrics = reconcile_scheduler.get_reconcile_metrics()
    assert metrics["runs"] == 1
    assert metrics["partial_runs"] == 0
    assert metrics["last_error"] is None
    assert metrics["last_success_at"] is not None


def test_partial_pass_is_recorded(monkeypatch):
    reconcile_scheduler._reset_metrics_for_testing()
    report = ReconciliationReport(
        started_at=NOW,
        finished_at=NOW,
        duration_ms=12,
        complete=False,
        errors=[ReconciliationError(kind="provider_unavailable", detail="HTTP 503", page=2)],
    )

    class FakeJob:
        def reconcile(self, *, cancel_event=None):
            return report

    monkeypatch.setattr(reconcile_scheduler, "get_sync_engine", lambda: _engine_with(FakeJob()))

    reconcile_scheduler.run_reconciliation_job()

    metrics = reconcile_scheduler.get_reconcile_metrics()
    assert metrics["partial_runs"] == 1
    assert metrics["last_error"] == "provider_unavailable: HTTP 503"
    assert metrics["last_success_at"] is None


def test_failed_job_is_counted_and_reraised(monkeypatch):
    reconcile_scheduler._reset_metrics_for_testing()

    class BrokenJob:
        def reconcile(self, *, cancel_event=None):
            raise RuntimeError("kaboom")

    monkeypatch.setattr(reconcile_scheduler, "get_sync_engine", lambda: _engine_with(BrokenJob()))

    with pytest.raises(RuntimeError):
        reconcile_scheduler.run_reconciliation_job()

    metrics = reconcile_scheduler.get_reconcile_metrics()
    assert metrics["failures"] == 1
    assert metrics["last_error"] == "RuntimeError: kaboom"


def test_disabled_scheduler_does_not_start(monkeypatch):
    monkeypatch.setattr(reconcile_scheduler, "get_sync_engine", lambda: _engine_with(None))

    reconcile_scheduler.start_reconcile_scheduler()

    assert reconcile_scheduler.get_reconcile_metrics()["scheduled"] is False
    reconcile_scheduler.shutdown_reconcile_scheduler()
