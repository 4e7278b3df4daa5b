"""Append-only outcome log feeding the operational surface."""
from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from .models import LedgerOutcome, Outcome, OutcomeSummary, ReconciliationReport, WriteDisposition

logger = logging.getLogger("billing.sync.outcomes")


class OutcomeEntry(BaseModel):
    """One processed delivery as seen by monitoring."""

    event_id: str
    event_type: str
    status: LedgerOutcome
    disposition: Optional[WriteDisposition] = None
    error_kind: Optional[str] = None
    duplicate: bool = False
    duration_ms: int = 0
    recorded_at: datetime

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class OutcomeLog:
    """Bounded in-memory history plus running counters.

    Counters are cumulative for the process lifetime; the entry history
    keeps only the most recent ``capacity`` deliveries.
    """

    def __init__(
        self,
        *,
        capacity: int = 1000,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._entries: Deque[OutcomeEntry] = deque(maxlen=max(1, capacity))
        self._reports: Deque[ReconciliationReport] = deque(maxlen=max(1, min(capacity, 100)))
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = Lock()
        self._counters: Dict[str, int] = {}
        self._latency_total = 0
        self._latency_max = 0
        self._reset_counters()

    def _reset_counters(self) -> None:
        self._counters = {
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "applied": 0,
            "skipped_stale": 0,
            "duplicates": 0,
            "in_progress": 0,
        }
        self._latency_total = 0
        self._latency_max = 0

    def record_event(
        self,
        outcome: Outcome,
        *,
        event_type: str,
        duration_ms: int,
        duplicate: bool = False,
    ) -> OutcomeEntry:
        entry = OutcomeEntry(
            event_id=outcome.event_id,
            event_type=event_type,
            status=outcome.status,
            disposition=outcome.disposition,
            error_kind=outcome.error_kind,
            duplicate=duplicate,
            duration_ms=max(0, int(duration_ms)),
            recorded_at=self._clock(),
        )
        with self._lock:
            self._entries.append(entry)
            if duplicate:
                self._counters["duplicates"] += 1
            else:
                self._counters["processed"] += 1
                self._latency_total += entry.duration_ms
                self._latency_max = max(self._latency_max, entry.duration_ms)
                if outcome.status == LedgerOutcome.SUCCEEDED:
                    self._counters["succeeded"] += 1
                elif outcome.status == LedgerOutcome.FAILED:
                    self._counters["failed"] += 1
                else:
                    self._counters["in_progress"] += 1
                if outcome.disposition == WriteDisposition.APPLIED:
                    self._counters["applied"] += 1
                elif outcome.disposition == WriteDisposition.SKIPPED_STALE:
                    self._counters["skipped_stale"] += 1

        log = logger.warning if outcome.status == LedgerOutcome.FAILED else logger.info
        log(
            "Billing event %s %s status=%s disposition=%s duration_ms=%s",
            outcome.event_id,
            event_type,
            outcome.status.value,
            outcome.disposition.value if outcome.disposition else None,
            entry.duration_ms,
            extra={
                "event_id": outcome.event_id,
                "event_type": event_type,
                "duplicate": duplicate,
                "error_kind": outcome.error_kind,
            },
        )
        return entry

    def record_reconciliation(self, report: ReconciliationReport) -> None:
        with self._lock:
            self._reports.append(report)
        log = logger.info if report.complete and not report.errors else logger.warning
        log(
            "Reconciliation pass created=%s updated=%s unchanged=%s flagged=%s errors=%s complete=%s duration_ms=%s",
            report.created,
            report.updated,
            report.unchanged,
            report.flagged,
            len(report.errors),
            report.complete,
            report.duration_ms,
        )

    def summary(self) -> OutcomeSummary:
        with self._lock:
            processed = self._counters["processed"]
            avg = (self._latency_total / processed) if processed else 0.0
            return OutcomeSummary(
                **self._counters,
                avg_latency_ms=round(avg, 2),
                max_latency_ms=self._latency_max,
                last_reconciliation=self._reports[-1] if self._reports else None,
            )

    def recent_events(self, limit: int = 50) -> List[OutcomeEntry]:
        with self._lock:
            entries = list(self._entries)
        return list(reversed(entries))[: max(0, limit)]

    def recent_reconciliations(self, limit: int = 10) -> List[ReconciliationReport]:
        with self._lock:
            reports = list(self._reports)
        return list(reversed(reports))[: max(0, limit)]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._reports.clear()
            self._reset_counters()


__all__ = ["OutcomeEntry", "OutcomeLog"]
