"""Subscription store abstraction and the ordering-guarded write path."""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol, Set

from .errors import InvalidField, SyncError
from .models import Subscription, WriteDisposition, WriteResult

Transition = Callable[[Optional[Subscription]], Optional[Subscription]]


class SubscriptionStore(Protocol):
    """Durable subscriptions keyed by provider subscription id.

    ``apply`` is the only mutation entry point. Implementations linearize
    calls per ``subscription_id`` so the ordering guard is race free.
    """

    def get(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def apply(
        self,
        subscription_id: str,
        occurred_at: datetime,
        transition: Transition,
    ) -> WriteResult:
        ...

    def list_subscription_ids(self) -> Set[str]:
        ...


def failed_write(error: SyncError) -> WriteResult:
    return WriteResult(
        disposition=WriteDisposition.FAILED,
        error_kind=error.kind,
        error_detail=error.message,
        retryable=error.retryable,
    )


def evaluate_transition(
    subscription_id: str,
    current: Optional[Subscription],
    occurred_at: datetime,
    transition: Transition,
    *,
    now: datetime,
) -> WriteResult:
    """Apply the ordering guard and compute the row to persist.

    Must be called while holding the per-subscription lock. Returns
    ``APPLIED`` with the candidate row, ``SKIPPED_STALE``/``UNCHANGED`` with
    the current row, or ``FAILED`` when the transition rejects the input.
    """

    if current is not None and occurred_at <= current.source_event_timestamp:
        return WriteResult(disposition=WriteDisposition.SKIPPED_STALE, subscription=current)

    try:
        candidate = transition(current)
    except SyncError as exc:
        return failed_write(exc)
    except ValueError as exc:
        return failed_write(InvalidField(str(exc)))

    if candidate is None:
        return WriteResult(disposition=WriteDisposition.UNCHANGED, subscription=current)
    if candidate.subscription_id != subscription_id:
        return failed_write(
            InvalidField(
                f"transition for {subscription_id} produced subscription {candidate.subscription_id}"
            )
        )

    candidate = candidate.model_copy(update={"source_event_timestamp": occurred_at, "updated_at": now})
    return WriteResult(disposition=WriteDisposition.APPLIED, subscription=candidate)


class InMemorySubscriptionStore:
    """Thread-safe store suitable for tests and local development."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._rows: Dict[str, Subscription] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _lock_for(self, subscription_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(subscription_id)
            if lock is None:
                lock = self._locks[subscription_id] = threading.Lock()
            return lock

    def get(self, subscription_id: str) -> Optional[Subscription]:
        return self._rows.get(subscription_id)

    def apply(
        self,
        subscription_id: str,
        occurred_at: datetime,
        transition: Transition,
    ) -> WriteResult:
        with self._lock_for(subscription_id):
            current = self._rows.get(subscription_id)
            result = evaluate_transition(
                subscription_id, current, occurred_at, transition, now=self._clock()
            )
            if result.disposition == WriteDisposition.APPLIED and result.subscription is not None:
                self._rows[subscription_id] = result.subscription
            return result

    def list_subscription_ids(self) -> Set[str]:
        return set(self._rows)

    def seed(self, subscription: Subscription) -> None:
        """Insert a row directly, bypassing the guard. Test setup only."""

        self._rows[subscription.subscription_id] = subscription


__all__ = [
    "InMemorySubscriptionStore",
    "SubscriptionStore",
    "Transition",
    "evaluate_transition",
    "failed_write",
]
