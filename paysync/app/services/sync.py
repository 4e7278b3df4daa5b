"""Application wiring for the subscription synchronization engine."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from ..config import SyncConfig, load_sync_config
from ..sync import (
    EventProcessor,
    HttpProviderClient,
    IdempotencyLedger,
    OutcomeLog,
    ReconciliationJob,
    SubscriptionStore,
    WebhookVerifier,
    build_handler_registry,
)
from ..sync.repository import (
    PostgresAccountResolver,
    PostgresIdempotencyLedger,
    PostgresSubscriptionStore,
    create_connection_pool,
    ensure_schema,
)
from ..sync.state_machine import AccountResolver


logger = logging.getLogger("billing.sync")


@dataclass
class SyncEngine:
    """Every long-lived component, built once per process."""

    config: SyncConfig
    verifier: WebhookVerifier
    store: SubscriptionStore
    ledger: IdempotencyLedger
    processor: EventProcessor
    reconciliation_job: ReconciliationJob
    outcome_log: OutcomeLog
    pool: Optional[object] = None

    def ensure_schema(self) -> None:
        if self.pool is not None:
            ensure_schema(self.pool)

    def close(self) -> None:
        if self.pool is not None:
            self.pool.closeall()
            logger.info("Billing sync connection pool closed")


def build_sync_engine(
    config: SyncConfig,
    *,
    store: SubscriptionStore,
    ledger: IdempotencyLedger,
    provider,
    account_resolver: Optional[AccountResolver] = None,
    pool: Optional[object] = None,
) -> SyncEngine:
    outcome_log = OutcomeLog(capacity=config.outcome_log_capacity)
    verifier = WebhookVerifier(
        config.webhook_secret,
        tolerance_seconds=config.signature_tolerance_seconds,
    )
    processor = EventProcessor(
        ledger=ledger,
        store=store,
        handlers=build_handler_registry(),
        outcome_log=outcome_log,
        account_resolver=account_resolver,
        price_tiers=config.price_tiers,
        lease_seconds=config.lease_seconds,
        poll_interval_seconds=config.duplicate_poll_interval_seconds,
        poll_timeout_seconds=config.duplicate_poll_timeout_seconds,
    )
    reconciliation_job = ReconciliationJob(
        store=store,
        provider=provider,
        outcome_log=outcome_log,
        account_resolver=account_resolver,
        price_tiers=config.price_tiers,
        page_size=config.reconcile_page_size,
        deadline_seconds=config.reconcile_deadline_seconds,
        max_rate_limit_retries=config.rate_limit_retries,
        backoff_seconds=config.rate_limit_backoff_seconds,
    )
    return SyncEngine(
        config=config,
        verifier=verifier,
        store=store,
        ledger=ledger,
        processor=processor,
        reconciliation_job=reconciliation_job,
        outcome_log=outcome_log,
        pool=pool,
    )


@lru_cache(maxsize=1)
def get_sync_engine() -> SyncEngine:
    config = load_sync_config()
    if not config.webhook_secret:
        logger.warning("BILLING_WEBHOOK_SECRET is not set; every webhook will be rejected")
    pool = create_connection_pool(config.database)
    provider = HttpProviderClient(
        config.provider_api_base,
        config.provider_api_key,
        timeout=config.provider_timeout_seconds,
    )
    return build_sync_engine(
        config,
        store=PostgresSubscriptionStore(pool),
        ledger=PostgresIdempotencyLedger(pool),
        provider=provider,
        account_resolver=PostgresAccountResolver(pool),
        pool=pool,
    )


__all__ = ["SyncEngine", "build_sync_engine", "get_sync_engine"]
