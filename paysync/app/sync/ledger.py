"""Idempotency ledger abstraction keyed by provider event id."""
from __future__ import annotations

import threading
from collections import Counter
from datetime import datetime
from typing import Dict, Optional, Protocol

from .models import IdempotencyRecord, LedgerOutcome


class IdempotencyLedger(Protocol):
    """Durable record of every event's processing outcome.

    ``try_begin`` is an insert-if-absent; ``reclaim`` and ``complete`` are
    compare-and-sets on the claim (``processing`` plus ``attempts``). Together
    they are the only synchronization used for duplicate delivery.
    """

    def get(self, event_id: str) -> Optional[IdempotencyRecord]:
        ...

    def try_begin(self, record: IdempotencyRecord) -> bool:
        ...

    def reclaim(
        self,
        event_id: str,
        *,
        now: datetime,
        lease_expires_at: datetime,
    ) -> Optional[IdempotencyRecord]:
        ...

    def complete(self, record: IdempotencyRecord) -> Optional[IdempotencyRecord]:
        """Store the outcome if ``record`` still holds the claim, else ``None``."""
        ...

    def outcome_counts(self) -> Dict[str, int]:
        ...


class InMemoryIdempotencyLedger:
    """Thread-safe ledger suitable for tests and local development."""

    def __init__(self) -> None:
        self._records: Dict[str, IdempotencyRecord] = {}
        self._lock = threading.Lock()

    def get(self, event_id: str) -> Optional[IdempotencyRecord]:
        with self._lock:
            return self._records.get(event_id)

    def try_begin(self, record: IdempotencyRecord) -> bool:
        with self._lock:
            if record.event_id in self._records:
                return False
            self._records[record.event_id] = record.model_copy(
                update={"outcome": LedgerOutcome.PROCESSING}
            )
            return True

    def reclaim(
        self,
        event_id: str,
        *,
        now: datetime,
        lease_expires_at: datetime,
    ) -> Optional[IdempotencyRecord]:
        with self._lock:
            existing = self._records.get(event_id)
            if existing is None or not existing.is_reclaimable(now):
                return None
            reclaimed = existing.model_copy(
                update={
                    "outcome": LedgerOutcome.PROCESSING,
                    "disposition": None,
                    "error_kind": None,
                    "error_detail": None,
                    "retryable": False,
                    "processing_duration_ms": None,
                    "completed_at": None,
                    "lease_expires_at": lease_expires_at,
                    "attempts": existing.attempts + 1,
                }
            )
            self._records[event_id] = reclaimed
            return reclaimed

    def complete(self, record: IdempotencyRecord) -> Optional[IdempotencyRecord]:
        with self._lock:
            current = self._records.get(record.event_id)
            if (
                current is None
                or current.outcome != LedgerOutcome.PROCESSING
                or current.attempts != record.attempts
            ):
                return None
            self._records[record.event_id] = record
            return record

    def outcome_counts(self) -> Dict[str, int]:
        with self._lock:
            counts = Counter(record.outcome.value for record in self._records.values())
        return {outcome.value: counts.get(outcome.value, 0) for outcome in LedgerOutcome}


__all__ = ["IdempotencyLedger", "InMemoryIdempotencyLedger"]
