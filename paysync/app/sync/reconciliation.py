"""Periodic repair of drift between the provider and the local store."""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from .errors import DeadlineExceeded, InvalidField, MissingField, ProviderRateLimited, ReconciliationInProgress, SyncError
from .models import (
    PlanTier,
    ReconciliationError,
    ReconciliationReport,
    Subscription,
    WriteDisposition,
    parse_optional_datetime,
)
from .outcome_log import OutcomeLog
from .provider import ProviderClient, ProviderPage
from .state_machine import AccountResolver, build_transition_context, subscription_from_object
from .store import SubscriptionStore

logger = logging.getLogger("billing.sync.reconciliation")

PROVIDER_TIMESTAMP_FIELDS = ("updated", "last_modified", "created")


def provider_timestamp(obj: Mapping[str, Any]) -> datetime:
    """Provider-side last-modified time of a listed subscription object."""

    for key in PROVIDER_TIMESTAMP_FIELDS:
        raw = obj.get(key)
        if raw in (None, ""):
            continue
        try:
            parsed = parse_optional_datetime(raw)
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise InvalidField(f"{key} is not a valid timestamp") from exc
        if parsed is not None:
            return parsed
    raise MissingField("provider subscription has no last-modified timestamp")


class _Tally:
    def __init__(self) -> None:
        self.created = 0
        self.updated = 0
        self.unchanged = 0
        self.skipped_stale = 0
        self.errors: List[ReconciliationError] = []
        self.seen: Set[str] = set()


class ReconciliationJob:
    """Walks the provider's full subscription list and converges the store.

    Every write goes through :meth:`SubscriptionStore.apply`, so a webhook
    event racing with a pass is ordered by provider time exactly like any
    other delivery. Local subscriptions the provider no longer lists are
    reported, never removed.
    """

    def __init__(
        self,
        *,
        store: SubscriptionStore,
        provider: ProviderClient,
        outcome_log: Optional[OutcomeLog] = None,
        account_resolver: Optional[AccountResolver] = None,
        price_tiers: Optional[Mapping[str, PlanTier]] = None,
        page_size: int = 100,
        deadline_seconds: float = 900.0,
        max_rate_limit_retries: int = 5,
        backoff_seconds: float = 2.0,
        clock: Optional[Callable[[], datetime]] = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._provider = provider
        self._outcome_log = outcome_log
        self._account_resolver = account_resolver
        self._price_tiers = dict(price_tiers or {})
        self._page_size = max(1, page_size)
        self._deadline_seconds = max(0.0, deadline_seconds)
        self._max_rate_limit_retries = max(0, max_rate_limit_retries)
        self._backoff_seconds = max(0.0, backoff_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._monotonic = monotonic
        self._sleep = sleep
        self._running = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def reconcile(self, *, cancel_event: Optional[threading.Event] = None) -> ReconciliationReport:
        if not self._running.acquire(blocking=False):
            raise ReconciliationInProgress("A reconciliation pass is already running")
        try:
            report = self._run(cancel_event)
        finally:
            self._running.release()

        if self._outcome_log is not None:
            self._outcome_log.record_reconciliation(report)
        return report

    def _run(self, cancel_event: Optional[threading.Event]) -> ReconciliationReport:
        started_at = self._clock()
        started = self._monotonic()
        deadline = started + self._deadline_seconds
        tally = _Tally()
        pages_fetched = 0
        cursor: Optional[str] = None
        complete = False
        cancelled = False

        while True:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.info("Reconciliation cancelled after %s pages", pages_fetched)
                break
            if self._monotonic() >= deadline:
                tally.errors.append(
                    ReconciliationError(
                        kind=DeadlineExceeded.kind,
                        detail=f"deadline of {self._deadline_seconds}s reached",
                        page=pages_fetched + 1,
                    )
                )
                break

            try:
                page = self._fetch_page(cursor, deadline)
            except SyncError as exc:
                logger.warning(
                    "Reconciliation stopped at page %s: %s",
                    pages_fetched + 1,
                    exc.message,
                )
                tally.errors.append(
                    ReconciliationError(kind=exc.kind, detail=exc.message, page=pages_fetched + 1)
                )
                break

            pages_fetched += 1
            for obj in page.data:
                self._reconcile_record(obj, tally)

            cursor = page.next_cursor
            if cursor is None:
                if page.has_more:
                    tally.errors.append(
                        ReconciliationError(
                            kind="malformed_page",
                            detail="page reports more results but has no cursor",
                            page=pages_fetched,
                        )
                    )
                else:
                    complete = True
                break

        flagged_ids: List[str] = []
        if complete:
            try:
                flagged_ids = sorted(self._store.list_subscription_ids() - tally.seen)
            except SyncError as exc:
                complete = False
                tally.errors.append(ReconciliationError(kind=exc.kind, detail=exc.message))
        for subscription_id in flagged_ids:
            logger.warning(
                "Subscription %s exists locally but not at the provider",
                subscription_id,
                extra={"subscription_id": subscription_id},
            )

        return ReconciliationReport(
            started_at=started_at,
            finished_at=self._clock(),
            duration_ms=max(0, int((self._monotonic() - started) * 1000)),
            created=tally.created,
            updated=tally.updated,
            unchanged=tally.unchanged,
            skipped_stale=tally.skipped_stale,
            flagged=len(flagged_ids),
            flagged_ids=flagged_ids,
            pages_fetched=pages_fetched,
            complete=complete,
            cancelled=cancelled,
            errors=tally.errors,
        )

    def _fetch_page(self, cursor: Optional[str], deadline: float) -> ProviderPage:
        attempt = 0
        while True:
            try:
                return self._provider.list_subscriptions(limit=self._page_size, starting_after=cursor)
            except ProviderRateLimited as exc:
                attempt += 1
                if attempt > self._max_rate_limit_retries:
                    raise
                delay = exc.retry_after
                if delay is None:
                    delay = self._backoff_seconds * (2 ** (attempt - 1))
                if self._monotonic() + delay >= deadline:
                    raise DeadlineExceeded("rate limit backoff would pass the reconciliation deadline") from exc
                logger.info(
                    "Provider rate limited page after %s; retrying in %.2fs (attempt %s)",
                    cursor,
                    delay,
                    attempt,
                )
                self._sleep(delay)

    def _reconcile_record(self, obj: Dict[str, Any], tally: _Tally) -> None:
        raw_id = obj.get("id")
        if not raw_id:
            tally.errors.append(
                ReconciliationError(kind=MissingField.kind, detail="provider subscription without id")
            )
            return
        subscription_id = str(raw_id)
        tally.seen.add(subscription_id)

        try:
            occurred_at = provider_timestamp(obj)
            context = build_transition_context(
                obj,
                account_resolver=self._account_resolver,
                price_tiers=self._price_tiers,
            )
            current = self._store.get(subscription_id)
            candidate = subscription_from_object(
                obj,
                subscription_id=subscription_id,
                source_timestamp=occurred_at,
                context=context,
                current=current,
            )
        except SyncError as exc:
            tally.errors.append(
                ReconciliationError(kind=exc.kind, detail=exc.message, subscription_id=subscription_id)
            )
            return

        if current is not None and not candidate.diverges_from(current):
            tally.unchanged += 1
            return

        existed: List[bool] = []

        def transition(latest: Optional[Subscription]) -> Subscription:
            existed.append(latest is not None)
            return subscription_from_object(
                obj,
                subscription_id=subscription_id,
                source_timestamp=occurred_at,
                context=context,
                current=latest,
            )

        result = self._store.apply(subscription_id, occurred_at, transition)
        if result.disposition == WriteDisposition.APPLIED:
            if existed and existed[0]:
                tally.updated += 1
            else:
                tally.created += 1
        elif result.disposition == WriteDisposition.SKIPPED_STALE:
            tally.skipped_stale += 1
        elif result.disposition == WriteDisposition.UNCHANGED:
            tally.unchanged += 1
        else:
            tally.errors.append(
                ReconciliationError(
                    kind=result.error_kind or "write_failed",
                    detail=result.error_detail or "subscription write failed",
                    subscription_id=subscription_id,
                )
            )


__all__ = ["PROVIDER_TIMESTAMP_FIELDS", "ReconciliationJob", "provider_timestamp"]
