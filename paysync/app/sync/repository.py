"""PostgreSQL persistence for subscriptions and the idempotency ledger."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, Optional, Set

import psycopg2
import psycopg2.errors
import psycopg2.extras
import psycopg2.pool
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .errors import StoreUnavailable
from .models import (
    IdempotencyRecord,
    LedgerOutcome,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    WriteDisposition,
    WriteResult,
)
from .store import Transition, evaluate_transition, failed_write

logger = logging.getLogger("billing.sync.repository")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS billing_subscriptions (
    subscription_id TEXT PRIMARY KEY,
    account_id TEXT,
    customer_id TEXT,
    plan_tier TEXT NOT NULL DEFAULT 'free',
    status TEXT NOT NULL,
    current_period_start TIMESTAMPTZ,
    current_period_end TIMESTAMPTZ,
    trial_end TIMESTAMPTZ,
    cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
    amount BIGINT,
    currency TEXT,
    billing_interval TEXT,
    source_event_timestamp TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS billing_subscriptions_account_idx
    ON billing_subscriptions (account_id);

CREATE TABLE IF NOT EXISTS billing_idempotency_records (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    received_at TIMESTAMPTZ NOT NULL,
    outcome TEXT NOT NULL,
    disposition TEXT,
    subscription_id TEXT,
    error_kind TEXT,
    error_detail TEXT,
    retryable BOOLEAN NOT NULL DEFAULT FALSE,
    processing_duration_ms INTEGER,
    lease_expires_at TIMESTAMPTZ,
    attempts INTEGER NOT NULL DEFAULT 1,
    completed_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS billing_idempotency_records_outcome_idx
    ON billing_idempotency_records (outcome);

CREATE TABLE IF NOT EXISTS billing_accounts (
    account_id TEXT PRIMARY KEY,
    billing_customer_id TEXT UNIQUE
);
"""


def create_connection_pool(database) -> psycopg2.pool.ThreadedConnectionPool:
    """Open the shared pool described by a ``DatabaseConfig``."""

    return psycopg2.pool.ThreadedConnectionPool(
        database.pool_min,
        database.pool_max,
        **database.connection_kwargs(),
    )


@contextmanager
def pooled_connection(pool) -> Iterator[PgConnection]:
    """Borrow a connection for one transaction and always hand it back."""

    try:
        connection = pool.getconn()
    except psycopg2.Error as exc:
        raise StoreUnavailable(f"Could not acquire a database connection: {exc}") from exc

    try:
        yield connection
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        pool.putconn(connection, close=bool(getattr(connection, "closed", False)))


@contextmanager
def _dict_cursor(pool) -> Iterator[PgCursor]:
    try:
        with pooled_connection(pool) as connection:
            with connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                yield cursor
    except psycopg2.Error as exc:
        raise StoreUnavailable(_describe(exc)) from exc


def _describe(exc: Exception) -> str:
    return str(exc).strip() or type(exc).__name__


def ensure_schema(pool) -> None:
    with _dict_cursor(pool) as cursor:
        cursor.execute(SCHEMA_SQL)
    logger.info("Billing sync schema ensured")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _row_to_subscription(row: dict) -> Subscription:
    amount = row.get("amount")
    return Subscription(
        subscription_id=row["subscription_id"],
        account_id=row.get("account_id"),
        customer_id=row.get("customer_id"),
        plan_tier=PlanTier(row.get("plan_tier") or PlanTier.FREE.value),
        status=SubscriptionStatus.parse(row["status"]),
        current_period_start=_aware(row.get("current_period_start")),
        current_period_end=_aware(row.get("current_period_end")),
        trial_end=_aware(row.get("trial_end")),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        amount=int(amount) if amount is not None else None,
        currency=row.get("currency"),
        billing_interval=row.get("billing_interval"),
        source_event_timestamp=row["source_event_timestamp"],
        updated_at=row["updated_at"],
    )


def _subscription_params(subscription: Subscription) -> Dict[str, object]:
    return {
        "subscription_id": subscription.subscription_id,
        "account_id": subscription.account_id,
        "customer_id": subscription.customer_id,
        "plan_tier": subscription.plan_tier.value,
        "status": subscription.status.value,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "trial_end": subscription.trial_end,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "amount": subscription.amount,
        "currency": subscription.currency,
        "billing_interval": subscription.billing_interval,
        "source_event_timestamp": subscription.source_event_timestamp,
        "updated_at": subscription.updated_at,
    }


def _row_to_record(row: dict) -> IdempotencyRecord:
    disposition = row.get("disposition")
    return IdempotencyRecord(
        event_id=row["event_id"],
        event_type=row["event_type"],
        received_at=_aware(row["received_at"]),
        outcome=LedgerOutcome(row["outcome"]),
        disposition=WriteDisposition(disposition) if disposition else None,
        subscription_id=row.get("subscription_id"),
        error_kind=row.get("error_kind"),
        error_detail=row.get("error_detail"),
        retryable=bool(row.get("retryable")),
        processing_duration_ms=row.get("processing_duration_ms"),
        lease_expires_at=_aware(row.get("lease_expires_at")),
        attempts=int(row.get("attempts") or 1),
        completed_at=_aware(row.get("completed_at")),
    )


def _record_params(record: IdempotencyRecord) -> Dict[str, object]:
    return {
        "event_id": record.event_id,
        "event_type": record.event_type,
        "received_at": record.received_at,
        "outcome": record.outcome.value,
        "disposition": record.disposition.value if record.disposition else None,
        "subscription_id": record.subscription_id,
        "error_kind": record.error_kind,
        "error_detail": record.error_detail,
        "retryable": record.retryable,
        "processing_duration_ms": record.processing_duration_ms,
        "lease_expires_at": record.lease_expires_at,
        "attempts": record.attempts,
        "completed_at": record.completed_at,
    }


class PostgresSubscriptionStore:
    """Subscription rows guarded by ``SELECT ... FOR UPDATE`` per id."""

    def __init__(self, pool, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._pool = pool
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get(self, subscription_id: str) -> Optional[Subscription]:
        with _dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE subscription_id = %s
                LIMIT 1
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def list_subscription_ids(self) -> Set[str]:
        with _dict_cursor(self._pool) as cursor:
            cursor.execute("SELECT subscription_id FROM billing_subscriptions")
            rows = cursor.fetchall() or []
            return {row["subscription_id"] for row in rows}

    def apply(
        self,
        subscription_id: str,
        occurred_at: datetime,
        transition: Transition,
    ) -> WriteResult:
        # A concurrent first insert loses with a unique violation; the retry
        # then finds the row and locks it.
        for attempt in range(2):
            try:
                return self._apply_once(subscription_id, occurred_at, transition)
            except psycopg2.errors.UniqueViolation as exc:
                if attempt:
                    return failed_write(StoreUnavailable(_describe(exc)))
                logger.info("Concurrent insert of subscription %s; retrying under lock", subscription_id)
            except psycopg2.Error as exc:
                logger.warning("Subscription write for %s failed: %s", subscription_id, _describe(exc))
                return failed_write(StoreUnavailable(_describe(exc)))
            except StoreUnavailable as exc:
                return failed_write(exc)
        return failed_write(StoreUnavailable(f"could not write subscription {subscription_id}"))

    def _apply_once(
        self,
        subscription_id: str,
        occurred_at: datetime,
        transition: Transition,
    ) -> WriteResult:
        with pooled_connection(self._pool) as connection:
            with connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(
                    """
                    SELECT *
                    FROM billing_subscriptions
                    WHERE subscription_id = %s
                    FOR UPDATE
                    """,
                    (subscription_id,),
                )
                row = cursor.fetchone()
                current = _row_to_subscription(row) if row else None
                result = evaluate_transition(
                    subscription_id, current, occurred_at, transition, now=self._clock()
                )
                if result.disposition != WriteDisposition.APPLIED or result.subscription is None:
                    return result

                params = _subscription_params(result.subscription)
                if current is None:
                    cursor.execute(
                        """
                        INSERT INTO billing_subscriptions (
                            subscription_id,
                            account_id,
                            customer_id,
                            plan_tier,
                            status,
                            current_period_start,
                            current_period_end,
                            trial_end,
                            cancel_at_period_end,
                            amount,
                            currency,
                            billing_interval,
                            source_event_timestamp,
                            updated_at
                        )
                        VALUES (%(subscription_id)s, %(account_id)s, %(customer_id)s, %(plan_tier)s,
                                %(status)s, %(current_period_start)s, %(current_period_end)s,
                                %(trial_end)s, %(cancel_at_period_end)s, %(amount)s, %(currency)s,
                                %(billing_interval)s, %(source_event_timestamp)s, %(updated_at)s)
                        """,
                        params,
                    )
                else:
                    cursor.execute(
                        """
                        UPDATE billing_subscriptions
                        SET account_id = %(account_id)s,
                            customer_id = %(customer_id)s,
                            plan_tier = %(plan_tier)s,
                            status = %(status)s,
                            current_period_start = %(current_period_start)s,
                            current_period_end = %(current_period_end)s,
                            trial_end = %(trial_end)s,
                            cancel_at_period_end = %(cancel_at_period_end)s,
                            amount = %(amount)s,
                            currency = %(currency)s,
                            billing_interval = %(billing_interval)s,
                            source_event_timestamp = %(source_event_timestamp)s,
                            updated_at = %(updated_at)s
                        WHERE subscription_id = %(subscription_id)s
                        """,
                        params,
                    )
                return result


class PostgresIdempotencyLedger:
    """Ledger rows in ``billing_idempotency_records`` keyed by event id."""

    def __init__(self, pool) -> None:
        self._pool = pool

    def get(self, event_id: str) -> Optional[IdempotencyRecord]:
        with _dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_idempotency_records
                WHERE event_id = %s
                LIMIT 1
                """,
                (event_id,),
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None

    def try_begin(self, record: IdempotencyRecord) -> bool:
        params = _record_params(record)
        params["outcome"] = LedgerOutcome.PROCESSING.value
        with _dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                INSERT INTO billing_idempotency_records (
                    event_id,
                    event_type,
                    received_at,
                    outcome,
                    subscription_id,
                    lease_expires_at,
                    attempts
                )
                VALUES (%(event_id)s, %(event_type)s, %(received_at)s, %(outcome)s,
                        %(subscription_id)s, %(lease_expires_at)s, %(attempts)s)
                ON CONFLICT (event_id) DO NOTHING
                """,
                params,
            )
            return cursor.rowcount > 0

    def reclaim(
        self,
        event_id: str,
        *,
        now: datetime,
        lease_expires_at: datetime,
    ) -> Optional[IdempotencyRecord]:
        with _dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                UPDATE billing_idempotency_records
                SET outcome = 'processing',
                    disposition = NULL,
                    error_kind = NULL,
                    error_detail = NULL,
                    retryable = FALSE,
                    processing_duration_ms = NULL,
                    completed_at = NULL,
                    lease_expires_at = %(lease_expires_at)s,
                    attempts = attempts + 1
                WHERE event_id = %(event_id)s
                  AND (
                    (outcome = 'processing' AND lease_expires_at IS NOT NULL AND lease_expires_at <= %(now)s)
                    OR (outcome = 'failed' AND retryable)
                  )
                RETURNING *
                """,
                {"event_id": event_id, "now": now, "lease_expires_at": lease_expires_at},
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None

    def complete(self, record: IdempotencyRecord) -> Optional[IdempotencyRecord]:
        with _dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                UPDATE billing_idempotency_records
                SET outcome = %(outcome)s,
                    disposition = %(disposition)s,
                    subscription_id = %(subscription_id)s,
                    error_kind = %(error_kind)s,
                    error_detail = %(error_detail)s,
                    retryable = %(retryable)s,
                    processing_duration_ms = %(processing_duration_ms)s,
                    lease_expires_at = %(lease_expires_at)s,
                    completed_at = %(completed_at)s
                WHERE event_id = %(event_id)s
                  AND outcome = 'processing'
                  AND attempts = %(attempts)s
                RETURNING *
                """,
                _record_params(record),
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None

    def outcome_counts(self) -> Dict[str, int]:
        with _dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                SELECT outcome, COUNT(*) AS total
                FROM billing_idempotency_records
                GROUP BY outcome
                """
            )
            rows = cursor.fetchall() or []
        counts = {outcome.value: 0 for outcome in LedgerOutcome}
        for row in rows:
            counts[row["outcome"]] = int(row["total"])
        return counts


class PostgresAccountResolver:
    """Looks up the local account for a provider billing-customer id."""

    def __init__(self, pool) -> None:
        self._pool = pool

    def resolve(self, customer_id: str) -> Optional[str]:
        with _dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                SELECT account_id
                FROM billing_accounts
                WHERE billing_customer_id = %s
                LIMIT 1
                """,
                (customer_id,),
            )
            row = cursor.fetchone()
            return str(row["account_id"]) if row else None


__all__ = [
    "PostgresAccountResolver",
    "PostgresIdempotencyLedger",
    "PostgresSubscriptionStore",
    "SCHEMA_SQL",
    "create_connection_pool",
    "ensure_schema",
    "pooled_connection",
]
