"""Scheduler integration for periodic subscription reconciliation."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from paysync.app.services.sync import get_sync_engine
from paysync.app.sync import ReconciliationInProgress, ReconciliationReport

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_ReconcileWorker"] = None

_RECONCILE_METRICS: Dict[str, object] = {
    "runs": 0,
    "partial_runs": 0,
    "failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _RECONCILE_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, report: ReconciliationReport) -> None:
    with _metrics_lock:
        _RECONCILE_METRICS["runs"] = int(_RECONCILE_METRICS.get("runs", 0)) + 1
        if report.partial:
            _RECONCILE_METRICS["partial_runs"] = int(_RECONCILE_METRICS.get("partial_runs", 0)) + 1
            first_error = report.errors[0] if report.errors else None
            _RECONCILE_METRICS["last_error"] = (
                f"{first_error.kind}: {first_error.detail}" if first_error else "cancelled"
            )
        else:
            _RECONCILE_METRICS["last_success_at"] = completed_at
            _RECONCILE_METRICS["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _RECONCILE_METRICS["failures"] = int(_RECONCILE_METRICS.get("failures", 0)) + 1
        _RECONCILE_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_reconciliation_job(*, cancel_event: Optional[Event] = None) -> ReconciliationReport:
    started_at = datetime.now(timezone.utc)
    _record_run_start(started_at)
    job = get_sync_engine().reconciliation_job
    try:
        report = job.reconcile(cancel_event=cancel_event)
    except ReconciliationInProgress:
        logger.info("Reconciliation already running; skipping this tick")
        raise
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Reconciliation job failed")
        raise
    _record_run_success(datetime.now(timezone.utc), report)
    logger.info(
        "Reconciliation job completed",
        extra={
            "created": report.created,
            "updated": report.updated,
            "unchanged": report.unchanged,
            "flagged": report.flagged,
            "complete": report.complete,
        },
    )
    return report


class _ReconcileWorker(Thread):
    def __init__(self, *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name="reconcile-scheduler")
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                run_reconciliation_job(cancel_event=self._stop_event)
            except Exception:
                # Logged inside run_reconciliation_job; keep the schedule.
                pass
            if self._stop_event.wait(self._interval):
                break


def start_reconcile_scheduler(*, initial_delay: Optional[float] = None) -> None:
    global _worker
    with _scheduler_lock:
        if _worker is not None:
            return
        config = get_sync_engine().config
        if not config.reconcile_enabled:
            logger.info("Reconciliation scheduler disabled")
            return
        interval = config.reconcile_interval_seconds
        delay = interval if initial_delay is None else initial_delay
        _worker = _ReconcileWorker(initial_delay=delay, interval=interval)
        _worker.start()
        logger.info(
            "Reconciliation scheduler started",
            extra={"initial_delay_seconds": round(delay, 2), "interval_seconds": interval},
        )


def shutdown_reconcile_scheduler() -> None:
    global _worker
    with _scheduler_lock:
        worker = _worker
        _worker = None
        if worker is None:
            return
        worker.stop()
        worker.join(timeout=1.0)
        logger.info("Reconciliation scheduler stopped")


def get_reconcile_metrics() -> Dict[str, object]:
    with _metrics_lock:
        snapshot = dict(_RECONCILE_METRICS)
    for key in ("last_run_at", "last_success_at"):
        value = snapshot.get(key)
        snapshot[key] = value.isoformat() if isinstance(value, datetime) else None
    snapshot["scheduled"] = _worker is not None
    return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _RECONCILE_METRICS.update(
            {
                "runs": 0,
                "partial_runs": 0,
                "failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "get_reconcile_metrics",
    "run_reconciliation_job",
    "shutdown_reconcile_scheduler",
    "start_reconcile_scheduler",
]
