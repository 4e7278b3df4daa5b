"""Idempotent, order-aware application of verified provider events."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional

from .errors import DeadlineExceeded, MissingField, SyncError
from .ledger import IdempotencyLedger
from .models import IdempotencyRecord, LedgerOutcome, Outcome, PlanTier, VerifiedEvent, WriteResult
from .outcome_log import OutcomeLog
from .state_machine import AccountResolver, HandlerRegistry, build_transition_context, resolve_handler
from .store import SubscriptionStore

logger = logging.getLogger("billing.sync")


class EventProcessor:
    """Applies each provider event at most once, in provider-time order.

    Delivery is at-least-once; the ledger turns it into exactly-once effect.
    A first delivery claims the event with an insert-if-absent, applies it
    through the store's guarded write path and records the terminal outcome.
    Later or concurrent deliveries read that outcome instead of re-applying.
    """

    def __init__(
        self,
        *,
        ledger: IdempotencyLedger,
        store: SubscriptionStore,
        handlers: HandlerRegistry,
        outcome_log: OutcomeLog,
        account_resolver: Optional[AccountResolver] = None,
        price_tiers: Optional[Mapping[str, PlanTier]] = None,
        lease_seconds: float = 30.0,
        poll_interval_seconds: float = 0.05,
        poll_timeout_seconds: float = 2.0,
        clock: Optional[Callable[[], datetime]] = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._handlers = handlers
        self._outcome_log = outcome_log
        self._account_resolver = account_resolver
        self._price_tiers = dict(price_tiers or {})
        self._lease = timedelta(seconds=max(lease_seconds, 1.0))
        self._poll_interval = max(poll_interval_seconds, 0.001)
        self._poll_timeout = max(poll_timeout_seconds, 0.0)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._monotonic = monotonic
        self._sleep = sleep

    def process(self, event: VerifiedEvent, *, deadline: Optional[float] = None) -> Outcome:
        """Apply ``event`` and return its structured outcome.

        ``deadline`` is an absolute value of the processor's monotonic clock.
        Processing failures are returned as outcomes, never raised.
        """

        started = self._monotonic()
        try:
            existing = self._ledger.get(event.event_id)
            if existing is not None and existing.is_terminal:
                logger.info(
                    "Duplicate delivery of %s resolved to stored outcome %s",
                    event.event_id,
                    existing.outcome.value,
                )
                return self._finish(event, Outcome.from_record(existing), started, duplicate=True)

            claimed = self._claim(event, existing)
        except SyncError as exc:
            logger.warning("Ledger unavailable for event %s: %s", event.event_id, exc.message)
            outcome = Outcome(
                event_id=event.event_id,
                status=LedgerOutcome.FAILED,
                subscription_id=event.subscription_id,
                error_kind=exc.kind,
                error_detail=exc.message,
                retryable=exc.retryable,
            )
            return self._finish(event, outcome, started)

        if claimed is None:
            return self._finish(event, self._await_winner(event, deadline), started, duplicate=True)

        return self._run(event, claimed, started, deadline)

    def _claim(
        self,
        event: VerifiedEvent,
        existing: Optional[IdempotencyRecord],
    ) -> Optional[IdempotencyRecord]:
        now = self._clock()
        if existing is None:
            record = IdempotencyRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                received_at=now,
                outcome=LedgerOutcome.PROCESSING,
                subscription_id=event.subscription_id,
                lease_expires_at=now + self._lease,
            )
            if self._ledger.try_begin(record):
                return record

        reclaimed = self._ledger.reclaim(event.event_id, now=now, lease_expires_at=now + self._lease)
        if reclaimed is not None:
            logger.info(
                "Reclaimed event %s for attempt %s",
                event.event_id,
                reclaimed.attempts,
            )
        return reclaimed

    def _await_winner(self, event: VerifiedEvent, deadline: Optional[float]) -> Outcome:
        give_up_at = self._monotonic() + self._poll_timeout
        if deadline is not None:
            give_up_at = min(give_up_at, deadline)

        while True:
            try:
                record = self._ledger.get(event.event_id)
            except SyncError as exc:
                logger.warning("Ledger unavailable while awaiting %s: %s", event.event_id, exc.message)
                return Outcome.pending(event.event_id, kind=exc.kind, detail=exc.message)
            if record is not None and record.outcome != LedgerOutcome.PROCESSING:
                return Outcome.from_record(record)
            if self._monotonic() >= give_up_at:
                return Outcome.pending(
                    event.event_id,
                    kind="in_progress",
                    detail="Another delivery of this event is still being processed",
                )
            self._sleep(self._poll_interval)

    def _run(
        self,
        event: VerifiedEvent,
        claimed: IdempotencyRecord,
        started: float,
        deadline: Optional[float],
    ) -> Outcome:
        try:
            handler = resolve_handler(self._handlers, event.event_type)
            if not event.subscription_id:
                raise MissingField(f"event {event.event_id} does not reference a subscription")
            context = build_transition_context(
                event.payload_object,
                account_resolver=self._account_resolver,
                price_tiers=self._price_tiers,
            )
            if deadline is not None and self._monotonic() >= deadline:
                raise DeadlineExceeded(f"deadline passed before applying event {event.event_id}")

            result: WriteResult = self._store.apply(
                event.subscription_id,
                event.occurred_at,
                lambda current: handler(current, event, context),
            )
        except DeadlineExceeded as exc:
            logger.warning("Event %s abandoned: %s", event.event_id, exc.message)
            outcome = Outcome.pending(event.event_id, kind=exc.kind, detail=exc.message)
            return self._finish(event, outcome, started)
        except SyncError as exc:
            return self._fail(event, claimed, started, exc.kind, exc.message, exc.retryable)
        except Exception as exc:
            logger.exception("Unexpected error while processing event %s", event.event_id)
            return self._fail(event, claimed, started, "internal_error", f"{type(exc).__name__}: {exc}", True)

        if result.failed:
            return self._fail(
                event,
                claimed,
                started,
                result.error_kind or "write_failed",
                result.error_detail or "subscription write failed",
                result.retryable,
            )

        completed = claimed.model_copy(
            update={
                "outcome": LedgerOutcome.SUCCEEDED,
                "disposition": result.disposition,
                "subscription_id": event.subscription_id,
                "error_kind": None,
                "error_detail": None,
                "retryable": False,
                "processing_duration_ms": self._elapsed_ms(started),
                "lease_expires_at": None,
                "completed_at": self._clock(),
            }
        )
        return self._complete(event, completed, started)

    def _fail(
        self,
        event: VerifiedEvent,
        claimed: IdempotencyRecord,
        started: float,
        kind: str,
        detail: str,
        retryable: bool,
    ) -> Outcome:
        if retryable:
            logger.warning("Event %s failed transiently (%s): %s", event.event_id, kind, detail)
        else:
            logger.error("Event %s rejected (%s): %s", event.event_id, kind, detail)
        failed = claimed.model_copy(
            update={
                "outcome": LedgerOutcome.FAILED,
                "disposition": None,
                "subscription_id": event.subscription_id,
                "error_kind": kind,
                "error_detail": detail,
                "retryable": retryable,
                "processing_duration_ms": self._elapsed_ms(started),
                "lease_expires_at": None,
                "completed_at": self._clock(),
            }
        )
        return self._complete(event, failed, started)

    def _complete(self, event: VerifiedEvent, record: IdempotencyRecord, started: float) -> Outcome:
        try:
            stored = self._ledger.complete(record)
        except SyncError as exc:
            # Row stays ``processing``; its lease lets a redelivery reclaim it.
            logger.warning("Could not record outcome for %s: %s", event.event_id, exc.message)
            return self._finish(event, Outcome.pending(event.event_id, kind=exc.kind, detail=exc.message), started)
        if stored is None:
            return self._finish(event, self._claim_lost(event, record), started, duplicate=True)
        return self._finish(event, Outcome.from_record(stored), started)

    def _claim_lost(self, event: VerifiedEvent, record: IdempotencyRecord) -> Outcome:
        logger.warning(
            "Claim on %s (attempt %s) was taken over; discarding outcome %s",
            event.event_id,
            record.attempts,
            record.outcome.value,
        )
        try:
            current = self._ledger.get(event.event_id)
        except SyncError as exc:
            return Outcome.pending(event.event_id, kind=exc.kind, detail=exc.message)
        if current is not None and current.is_terminal:
            return Outcome.from_record(current)
        return Outcome.pending(
            event.event_id,
            kind="in_progress",
            detail="Another delivery of this event now owns its ledger entry",
        )

    def _finish(self, event: VerifiedEvent, outcome: Outcome, started: float, *, duplicate: bool = False) -> Outcome:
        self._outcome_log.record_event(
            outcome,
            event_type=event.event_type,
            duration_ms=self._elapsed_ms(started),
            duplicate=duplicate,
        )
        return outcome

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._monotonic() - started) * 1000))


__all__ = ["EventProcessor"]
